from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from graindesk.database import get_db
from graindesk.models import Client, ClientRole

_DB_DEP = Depends(get_db)


@dataclass(frozen=True)
class Actor:
    """Client on whose behalf a request runs.

    Identity is propagated by the upstream gateway through headers; this service
    does not authenticate.
    """

    client: Client
    role: ClientRole

    @property
    def id(self) -> int:
        return int(self.client.id)

    @property
    def is_admin(self) -> bool:
        return self.role == ClientRole.admin


def _parse_role(raw: Optional[str], client: Client) -> ClientRole:
    if raw is None or not str(raw).strip():
        return client.role
    try:
        role = ClientRole(str(raw).strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown client role")
    # A header cannot elevate a plain client to admin.
    if role == ClientRole.admin and client.role != ClientRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    return role


def get_current_actor(
    x_client_id: Optional[str] = Header(None, alias="X-Client-Id"),
    x_client_role: Optional[str] = Header(None, alias="X-Client-Role"),
    db: Session = _DB_DEP,
) -> Actor:
    if not x_client_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Client-Id")
    try:
        client_id = int(x_client_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-Client-Id")

    client = db.get(Client, client_id)
    if client is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown client")
    return Actor(client=client, role=_parse_role(x_client_role, client))


_ACTOR_DEP = Depends(get_current_actor)


def require_admin(actor: Actor = _ACTOR_DEP) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    return actor
