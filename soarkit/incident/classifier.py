"""
Severity Classifier - map an indicator set to an incident category and severity.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from soarkit.core.config import ClassifierConfig
from soarkit.core.errors import ClassificationError
from soarkit.core.logger import get_logger
from soarkit.core.severity import Severity
from soarkit.incident.response import IncidentCategory
from soarkit.ingest.indicator import Indicator, IndicatorType

logger = get_logger(__name__)


@dataclass
class Classification:
    """Result of classifying an indicator set."""
    category: IncidentCategory
    severity: Severity
    score: float
    reasons: List[str] = field(default_factory=list)
    affected_assets: List[str] = field(default_factory=list)
    votes: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "score": self.score,
            "reasons": self.reasons,
            "affected_assets": self.affected_assets,
            "votes": self.votes,
        }


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class SeverityClassifier:
    """
    Classify indicator sets using documented thresholds.

    Score is the confidence-weighted sum of indicator type weights plus a
    bonus for every watchlist hit, capped at 100. The score picks a base
    severity; it is then raised, never lowered, by the highest severity a
    source reported, by per-category floors and by blast radius.
    """

    TYPE_WEIGHTS = {
        IndicatorType.SHA256: 15,
        IndicatorType.SHA1: 15,
        IndicatorType.MD5: 15,
        IndicatorType.PROCESS: 10,
        IndicatorType.FILE_PATH: 10,
        IndicatorType.IP: 8,
        IndicatorType.DOMAIN: 8,
        IndicatorType.URL: 8,
        IndicatorType.EMAIL: 6,
        IndicatorType.USERNAME: 5,
        IndicatorType.HOSTNAME: 2,
    }

    WATCHLIST_BONUS = 20
    MAX_SCORE = 100.0

    CATEGORY_PRIORITY = [
        IncidentCategory.RANSOMWARE,
        IncidentCategory.DATA_BREACH,
        IncidentCategory.DOS,
        IncidentCategory.PHISHING,
        IncidentCategory.MALWARE,
        IncidentCategory.UNAUTHORIZED_ACCESS,
        IncidentCategory.INTRUSION,
        IncidentCategory.OTHER,
    ]

    CATEGORY_FLOORS = {
        IncidentCategory.RANSOMWARE: Severity.CRITICAL,
        IncidentCategory.DATA_BREACH: Severity.HIGH,
        IncidentCategory.DOS: Severity.HIGH,
    }

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()

    def _votes(self, indicator: Indicator) -> Dict[IncidentCategory, float]:
        cfg = self.config
        ctx = indicator.context
        votes: Dict[IncidentCategory, float] = defaultdict(float)

        if "ransomware" in indicator.tags:
            votes[IncidentCategory.RANSOMWARE] += 10
        mass_changes = max(
            _number(ctx.get("files_encrypted")) or 0,
            _number(ctx.get("files_renamed")) or 0,
        )
        if mass_changes >= cfg.mass_encryption_threshold:
            votes[IncidentCategory.RANSOMWARE] += 10

        bytes_out = _number(ctx.get("bytes_out"))
        if bytes_out is not None and bytes_out >= cfg.exfil_bytes_threshold:
            votes[IncidentCategory.DATA_BREACH] += 8

        pps = _number(ctx.get("pps"))
        rps = _number(ctx.get("rps"))
        if (pps is not None and pps >= cfg.ddos_pps_threshold) or \
                (rps is not None and rps >= cfg.ddos_rps_threshold):
            votes[IncidentCategory.DOS] += 8

        if indicator.source == "email_gateway":
            votes[IncidentCategory.PHISHING] += 3

        if indicator.source == "edr" and (
            indicator.indicator_type.is_hash
            or indicator.indicator_type in (IndicatorType.PROCESS, IndicatorType.FILE_PATH)
        ):
            votes[IncidentCategory.MALWARE] += 4

        failed = _number(ctx.get("failed_logins"))
        if failed is not None and failed >= cfg.failed_login_threshold:
            votes[IncidentCategory.UNAUTHORIZED_ACCESS] += 6

        if indicator.source == "network" and indicator.indicator_type == IndicatorType.IP:
            votes[IncidentCategory.INTRUSION] += 2

        return votes

    def _pick_category(self, totals: Dict[IncidentCategory, float]) -> IncidentCategory:
        if not totals:
            return IncidentCategory.OTHER

        def rank(category: IncidentCategory):
            priority = (
                self.CATEGORY_PRIORITY.index(category)
                if category in self.CATEGORY_PRIORITY else len(self.CATEGORY_PRIORITY)
            )
            return (-totals[category], priority)

        return min(totals, key=rank)

    def score(self, indicators: Sequence[Indicator]) -> float:
        """Confidence-weighted score of an indicator set, 0-100."""
        total = 0.0
        for indicator in indicators:
            weight = self.TYPE_WEIGHTS.get(indicator.indicator_type, 1)
            total += weight * indicator.confidence / 100
            if indicator.watchlist_match:
                total += self.WATCHLIST_BONUS
        return round(min(total, self.MAX_SCORE), 2)

    def severity_for_score(self, score: float) -> Severity:
        if score >= self.config.critical:
            return Severity.CRITICAL
        if score >= self.config.high:
            return Severity.HIGH
        if score >= self.config.medium:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def affected_assets(indicators: Sequence[Indicator]) -> List[str]:
        assets = set()
        for indicator in indicators:
            if indicator.asset:
                assets.add(indicator.asset)
            if indicator.indicator_type == IndicatorType.HOSTNAME:
                assets.add(indicator.value)
        return sorted(assets)

    def classify(self, indicators: Sequence[Indicator]) -> Classification:
        """Classify an indicator set."""
        if not indicators:
            raise ClassificationError("Cannot classify an empty indicator set")

        reasons: List[str] = []

        totals: Dict[IncidentCategory, float] = defaultdict(float)
        for indicator in indicators:
            for category, weight in self._votes(indicator).items():
                totals[category] += weight
        category = self._pick_category(totals)
        reasons.append(f"category {category.value} (votes: "
                       f"{', '.join(f'{c.value}={w:g}' for c, w in totals.items()) or 'none'})")

        watch_hits = sum(1 for i in indicators if i.watchlist_match)
        if watch_hits:
            reasons.append(f"{watch_hits} watchlist hit(s) (+{self.WATCHLIST_BONUS:g} each)")

        score = self.score(indicators)
        severity = self.severity_for_score(score)
        reasons.append(f"score {score:g} -> {severity.value}")

        hints = [i.severity_hint for i in indicators if i.severity_hint is not None]
        if hints and max(hints) > severity:
            severity = max(hints)
            reasons.append(f"raised to reported severity {severity.value}")

        floor = self.CATEGORY_FLOORS.get(category)
        if floor and floor > severity:
            severity = floor
            reasons.append(f"raised to {category.value} floor {severity.value}")

        assets = self.affected_assets(indicators)
        if len(assets) >= self.config.asset_escalation:
            bumped = severity.bump()
            if bumped != severity:
                reasons.append(f"{len(assets)} affected assets: {severity.value} -> {bumped.value}")
            severity = bumped

        classification = Classification(
            category=category,
            severity=severity,
            score=score,
            reasons=reasons,
            affected_assets=assets,
            votes={c.value: w for c, w in totals.items()},
        )

        logger.security_event(
            "classification",
            severity.value,
            f"Classified {len(indicators)} indicators as {category.value}/{severity.value}",
            category=category.value,
            score=score,
            assets=assets,
        )
        return classification
