"""
Indicator schema shared by every ingest source.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from soarkit.core.severity import Severity


class IndicatorType(Enum):
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    EMAIL = "email"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    HOSTNAME = "hostname"
    USERNAME = "username"
    FILE_PATH = "file_path"
    PROCESS = "process"

    @property
    def is_hash(self) -> bool:
        return self in (IndicatorType.MD5, IndicatorType.SHA1, IndicatorType.SHA256)


class IndicatorSource(Enum):
    EMAIL_GATEWAY = "email_gateway"
    EDR = "edr"
    NETWORK = "network"
    SIEM = "siem"
    MANUAL = "manual"


@dataclass
class Indicator:
    """A normalized observable from any alert source."""
    id: str
    indicator_type: IndicatorType
    value: str
    source: str
    observed_at: datetime
    confidence: int = 50
    severity_hint: Optional[Severity] = None
    asset: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(
            f"{self.indicator_type.value}:{self.value}".encode()
        ).hexdigest()

    @property
    def watchlist_match(self) -> bool:
        return bool(self.context.get("watchlist_match"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.indicator_type.value,
            "value": self.value,
            "source": self.source,
            "observed_at": self.observed_at.isoformat(),
            "confidence": self.confidence,
            "severity_hint": self.severity_hint.value if self.severity_hint else None,
            "asset": self.asset,
            "tags": self.tags,
            "context": self.context,
            "fingerprint": self.fingerprint,
        }
