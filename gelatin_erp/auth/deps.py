"""FastAPI dependencies for request identity.

Authentication happens upstream (hosted identity provider / reverse proxy),
which forwards the signed-in user's name in ``X-Actor``.  The value is only
used to attribute audit-log entries and blend reviews.

Dependencies:
  get_actor  → actor name from X-Actor, "system" when absent
"""

from fastapi import Header

DEFAULT_ACTOR = "system"


async def get_actor(x_actor: str | None = Header(None, max_length=200)) -> str:
    actor = (x_actor or "").strip()
    return actor or DEFAULT_ACTOR
