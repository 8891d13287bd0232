"""
Indicator Ingest - normalize alerts from heterogeneous sources into Indicators.
"""

import re
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from soarkit.core.logger import get_logger
from soarkit.core.database import Database
from soarkit.core.errors import IngestError, UnknownSourceError
from soarkit.core.severity import normalize_severity, max_severity
from soarkit.core.utils import (
    validate_ip, validate_domain, validate_url, validate_email, validate_hash,
    refang_ioc, parse_timestamp, utcnow,
)
from soarkit.ingest.adapters import BUILTIN_ADAPTERS, Candidate, from_text
from soarkit.ingest.indicator import Indicator, IndicatorType

logger = get_logger(__name__)

Adapter = Callable[[Any], List[Candidate]]
Alert = Union[Tuple[str, Any], Dict[str, Any]]


class IndicatorIngest:
    """
    Normalize alerts and IoCs into a single Indicator schema.

    Features:
    - Pluggable per-source adapters (email gateway, EDR, network, SIEM, manual)
    - Value validation and normalization per indicator type
    - Batch de-duplication by fingerprint
    - Watchlist matching and persistence
    """

    # Common false positive values
    FALSE_POSITIVES = {
        IndicatorType.DOMAIN: {"example.com", "example.org", "example.net", "localhost"},
        IndicatorType.IP: {"127.0.0.1", "0.0.0.0", "255.255.255.255", "::1"},
    }

    HOSTNAME_PATTERN = re.compile(r'^[a-z0-9](?:[a-z0-9_.-]{0,252})$')

    CONFIDENCE_LEVELS = {
        "low": 25,
        "medium": 50,
        "moderate": 50,
        "high": 80,
        "very_high": 95,
        "certain": 100,
    }

    def __init__(self, db: Optional[Database] = None):
        self.db = db
        self.adapters: Dict[str, Adapter] = dict(BUILTIN_ADAPTERS)

    def register_adapter(self, source: str, adapter: Adapter) -> None:
        """Register or replace the adapter for a source."""
        self.adapters[source] = adapter

    def detect_type(self, value: str) -> Optional[IndicatorType]:
        """Detect indicator type from a bare value."""
        value = refang_ioc(value.strip())

        hash_type = validate_hash(value)
        if hash_type:
            return IndicatorType(hash_type)
        if value.startswith(("http://", "https://")):
            return IndicatorType.URL
        if validate_email(value):
            return IndicatorType.EMAIL
        if validate_ip(value):
            return IndicatorType.IP
        if validate_domain(value):
            return IndicatorType.DOMAIN
        if re.match(r'^[A-Za-z]:\\', value) or value.startswith("/"):
            return IndicatorType.FILE_PATH

        return None

    def _normalize_value(self, value: str, ioc_type: IndicatorType) -> Optional[str]:
        """Normalize a value, returning None if it is invalid for its type."""
        value = value.strip()
        if not value:
            return None

        if ioc_type.is_hash:
            value = value.lower()
            return value if validate_hash(value) == ioc_type.value else None

        if ioc_type == IndicatorType.IP:
            value = refang_ioc(value)
            return value if validate_ip(value) else None

        if ioc_type == IndicatorType.DOMAIN:
            value = refang_ioc(value).lower().rstrip(".")
            value = re.sub(r'^https?://', '', value)
            return value if validate_domain(value) else None

        if ioc_type == IndicatorType.URL:
            value = refang_ioc(value)
            return value if validate_url(value) else None

        if ioc_type == IndicatorType.EMAIL:
            value = refang_ioc(value).lower()
            return value if validate_email(value) else None

        if ioc_type == IndicatorType.HOSTNAME:
            value = value.lower()
            return value if self.HOSTNAME_PATTERN.match(value) else None

        if ioc_type in (IndicatorType.USERNAME, IndicatorType.PROCESS):
            return value.lower()

        return value

    def _build(
        self,
        candidate: Candidate,
        source: str,
        defaults: Dict[str, Any],
    ) -> Optional[Indicator]:
        raw_value = candidate.get("value")
        if raw_value is None or isinstance(raw_value, (dict, list, bool)):
            logger.warning(f"Dropping {source} candidate without a scalar value: {candidate}")
            return None
        raw_value = str(raw_value)

        type_name = candidate.get("type")
        try:
            ioc_type = IndicatorType(type_name) if type_name else self.detect_type(raw_value)
        except ValueError:
            logger.warning(f"Dropping {source} candidate with unknown type {type_name!r}")
            return None

        if ioc_type is None:
            logger.warning(f"Could not determine indicator type for: {raw_value}")
            return None

        value = self._normalize_value(raw_value, ioc_type)
        if value is None:
            logger.warning(f"Dropping invalid {ioc_type.value} from {source}: {raw_value}")
            return None

        if value in self.FALSE_POSITIVES.get(ioc_type, set()):
            logger.debug(f"Skipping false positive: {value}")
            return None

        confidence = self._confidence(candidate.get("confidence"), defaults["confidence"])

        asset = candidate.get("asset") or defaults["asset"]

        return Indicator(
            id=f"ind-{uuid.uuid4().hex[:12]}",
            indicator_type=ioc_type,
            value=value,
            source=source,
            observed_at=defaults["observed_at"],
            confidence=confidence,
            severity_hint=defaults["severity"],
            asset=str(asset).lower() if asset else None,
            tags=list(dict.fromkeys(candidate.get("tags", []))),
            context=dict(candidate.get("context") or {}),
            raw=defaults["raw"],
        )

    @classmethod
    def _confidence(cls, value: Any, default: int = 50) -> int:
        """Coerce a confidence to an int in 0-100, falling back to default."""
        if value is None or isinstance(value, bool):
            return default
        if isinstance(value, str):
            level = value.strip().lower().replace(" ", "_").replace("-", "_")
            if level in cls.CONFIDENCE_LEVELS:
                return cls.CONFIDENCE_LEVELS[level]
        try:
            return max(0, min(100, int(float(value))))
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Unrecognized confidence {value!r}; using {default}")
            return default

    def _payload_defaults(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            return {
                "observed_at": utcnow(),
                "severity": None,
                "confidence": 50,
                "asset": None,
                "raw": {"text": payload} if isinstance(payload, str) else {},
            }

        timestamp = None
        for key in ("timestamp", "observed_at", "@timestamp", "time", "event_time"):
            if payload.get(key) is not None:
                timestamp = parse_timestamp(payload[key])
                if timestamp is None:
                    logger.warning(f"Unparseable timestamp {payload[key]!r}; using now")
                break

        severity = None
        for key in ("severity", "priority", "risk_score", "level"):
            if payload.get(key) is not None:
                severity = normalize_severity(payload[key])
                if severity is None:
                    logger.warning(f"Unrecognized severity {payload[key]!r}")
                break

        return {
            "observed_at": timestamp or utcnow(),
            "severity": severity,
            "confidence": self._confidence(payload.get("confidence")),
            "asset": payload.get("asset"),
            "raw": payload,
        }

    def normalize(self, source: str, payload: Any) -> List[Indicator]:
        """Normalize one alert payload (or a list of them) from a source."""
        adapter = self.adapters.get(source)
        if adapter is None:
            raise UnknownSourceError(source)

        if isinstance(payload, list):
            indicators = []
            for item in payload:
                indicators.extend(self.normalize(source, item))
            return indicators

        if not isinstance(payload, (dict, str)):
            raise IngestError(
                f"Unsupported payload type for {source}: {type(payload).__name__}"
            )

        defaults = self._payload_defaults(payload)
        if isinstance(payload, str):
            candidates = from_text(payload, [source])
        else:
            candidates = adapter(payload)

        indicators = []
        for candidate in candidates:
            indicator = self._build(candidate, source, defaults)
            if indicator:
                indicators.append(indicator)

        logger.debug(f"Normalized {len(indicators)} indicators from {source}")
        return indicators

    @staticmethod
    def _merge(existing: Indicator, new: Indicator) -> None:
        existing.tags = list(dict.fromkeys(existing.tags + new.tags))
        existing.confidence = max(existing.confidence, new.confidence)
        existing.observed_at = min(existing.observed_at, new.observed_at)
        existing.severity_hint = max_severity(existing.severity_hint, new.severity_hint)
        existing.asset = existing.asset or new.asset
        for key, value in new.context.items():
            existing.context.setdefault(key, value)
        sources = existing.context.setdefault("sources", [existing.source])
        if new.source not in sources:
            sources.append(new.source)

    def deduplicate(self, indicators: Iterable[Indicator]) -> List[Indicator]:
        """Merge indicators sharing a fingerprint, keeping first-seen order."""
        merged: Dict[str, Indicator] = {}
        for indicator in indicators:
            existing = merged.get(indicator.fingerprint)
            if existing is None:
                merged[indicator.fingerprint] = indicator
            else:
                self._merge(existing, indicator)
        return list(merged.values())

    def _apply_watchlist(self, indicator: Indicator) -> None:
        match = self.db.check_watch(indicator.value)
        if not match:
            return

        indicator.context["watchlist_match"] = True
        indicator.context["watchlist_source"] = match.get("source")
        indicator.confidence = max(indicator.confidence, int(match.get("confidence") or 0))
        if "watchlist" not in indicator.tags:
            indicator.tags.append("watchlist")

        logger.ioc_detected(
            indicator.indicator_type.value,
            indicator.value,
            source=indicator.source,
            watchlist_source=match.get("source"),
        )

    def ingest(self, alerts: Iterable[Alert]) -> List[Indicator]:
        """
        Normalize a batch of alerts.

        Each alert is a ``(source, payload)`` pair or a
        ``{"source": ..., "payload": ...}`` dict.
        """
        collected: List[Indicator] = []
        for alert in alerts:
            if isinstance(alert, dict):
                source, payload = alert.get("source"), alert.get("payload")
            else:
                source, payload = alert
            collected.extend(self.normalize(source, payload))

        indicators = self.deduplicate(collected)

        if self.db is not None:
            for indicator in indicators:
                self._apply_watchlist(indicator)
                self.db.upsert_indicator(
                    fingerprint=indicator.fingerprint,
                    indicator_type=indicator.indicator_type.value,
                    value=indicator.value,
                    source=indicator.source,
                    confidence=indicator.confidence,
                    severity_hint=indicator.severity_hint.value if indicator.severity_hint else None,
                    asset=indicator.asset,
                    tags=indicator.tags,
                    context=indicator.context,
                    observed_at=indicator.observed_at.isoformat(),
                )

        logger.info(f"Ingested {len(indicators)} unique indicators from {len(collected)} observations")
        return indicators
