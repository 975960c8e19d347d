from __future__ import annotations

from pydantic import BaseModel


class FetchedDocument(BaseModel):
    """Raw source document as retrieved from the origin.

    Transient: discarded once sanitized or when a later stage fails.
    """

    url: str
    content: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")
