from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

import jwt
from jwt import InvalidTokenError

from ..domain.identity import Actor, Role


def create_access_token(
    *,
    actor_id: str,
    role: Role,
    secret: str,
    name: str = "",
    facilities: Iterable[int] | None = None,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=30))
    payload: dict[str, object] = {"sub": str(actor_id), "role": str(role), "name": name, "iat": now, "exp": exp}
    if facilities is not None:
        payload["facilities"] = sorted(int(f) for f in facilities)
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(
    token: str,
    *,
    secret: str,
    algorithms: Sequence[str],
) -> Actor:
    try:
        payload = jwt.decode(token, secret, algorithms=list(algorithms))
    except InvalidTokenError as exc:  # includes ExpiredSignatureError
        raise ValueError("invalid token") from exc

    sub = payload.get("sub")
    if not sub:
        raise ValueError("token missing sub")
    try:
        role = Role(payload.get("role", ""))
    except ValueError as exc:
        raise ValueError("token role is not recognised") from exc

    scope = payload.get("facilities")
    if scope is not None:
        try:
            scope = frozenset(int(f) for f in scope)
        except (TypeError, ValueError) as exc:
            raise ValueError("token facilities claim must be a list of ids") from exc

    return Actor(
        actor_id=str(sub),
        role=role,
        display_name=str(payload.get("name") or ""),
        facility_scope=scope,
    )
