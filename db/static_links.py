"""Static footer links rendered into every email."""
from typing import List, Optional
from pydantic import BaseModel
from db.connection import db, Database


class StaticLink(BaseModel):
    """A footer link (or plain text line when url is empty)."""
    name: str
    fixed_text: str = ""
    url: Optional[str] = None
    list_type: str = "general"


class StaticLinkStore:
    """Read static links."""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or db

    async def list_for_email(self) -> List[StaticLink]:
        """Links meant for the general mailing list."""
        rows = await self.db.fetch(
            """
            SELECT name, fixed_text, url, list_type
            FROM static_links
            WHERE list_type IN ('general', 'all')
            ORDER BY position, id
            """
        )
        return [StaticLink(**dict(row)) for row in rows]


# Global instance
static_link_store = StaticLinkStore()
