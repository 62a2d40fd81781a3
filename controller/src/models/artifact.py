"""
Build outputs and publish receipts.
"""

from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from controller.src.models.step import SourceRef

class Artifact(BaseModel):
    digest: str
    image_name: str
    source: SourceRef
    tags: List[str] = []

    class Config:
        frozen = True

class PublishReceipt(BaseModel):
    digest: str
    tag: str
    registry_url: str
    timestamp: datetime
    repository: str = ""
    manifest_digest: Optional[str] = None
    already_present: bool = False

    class Config:
        frozen = True

    def reference(self) -> dict:
        """Durable record consumed by deployment tooling."""
        return {
            "digest": self.digest,
            "tag": self.tag,
            "registry_url": self.registry_url,
        }
