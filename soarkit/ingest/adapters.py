"""
Source adapters.

Each adapter turns one raw alert payload into candidate dicts of the form
``{"type", "value", "tags", "context", "confidence", "asset"}``. Validation,
normalization and defaults happen in IndicatorIngest, not here.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from soarkit.core.utils import extract_iocs, is_private_ip, refang_ioc, validate_hash, validate_ip

Candidate = Dict[str, Any]

VERDICT_CONFIDENCE = {
    "malicious": 90,
    "phish": 90,
    "phishing": 90,
    "spam": 40,
    "suspicious": 60,
    "clean": 10,
    "benign": 10,
}

EXTRACTED_TYPES = {
    "ips": "ip",
    "domains": "domain",
    "urls": "url",
    "emails": "email",
    "md5": "md5",
    "sha1": "sha1",
    "sha256": "sha256",
}


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, "", []):
            return value
    return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _candidate(ioc_type: str, value: Any, tags: List[str] = None, **extra) -> Candidate:
    candidate = {"type": ioc_type, "value": value, "tags": list(tags or [])}
    candidate.update({k: v for k, v in extra.items() if v is not None})
    return candidate


def _hash_candidate(value: Any, tags: List[str], **extra) -> Optional[Candidate]:
    if not isinstance(value, str):
        return None
    hash_type = validate_hash(value)
    if not hash_type:
        return _candidate("sha256", value, tags, **extra)  # rejected downstream
    return _candidate(hash_type, value, tags, **extra)


def from_text(text: str, tags: List[str] = None) -> List[Candidate]:
    """Extract candidates from free text such as an analyst note."""
    candidates = []
    for key, values in extract_iocs(text).items():
        for value in values:
            candidates.append(_candidate(EXTRACTED_TYPES[key], value, tags))
    return candidates


def email_gateway_adapter(payload: Dict[str, Any]) -> List[Candidate]:
    """Email security gateway detections (phishing, malicious attachments)."""
    candidates: List[Candidate] = []

    verdict = str(payload.get("verdict", "")).lower()
    confidence = VERDICT_CONFIDENCE.get(verdict)
    context = {
        "message_id": payload.get("message_id"),
        "subject": payload.get("subject"),
        "verdict": verdict or None,
    }
    context = {k: v for k, v in context.items() if v}

    sender = _first(payload, "sender", "from", "from_address")
    if sender:
        candidates.append(_candidate(
            "email", sender, ["sender"], context=context, confidence=confidence
        ))
        if isinstance(sender, str) and "@" in sender:
            candidates.append(_candidate(
                "domain", sender.rsplit("@", 1)[1], ["sender_domain"],
                context=context, confidence=confidence,
            ))

    reply_to = payload.get("reply_to")
    if reply_to and reply_to != sender:
        candidates.append(_candidate(
            "email", reply_to, ["reply_to"], context=context, confidence=confidence
        ))

    for url in _as_list(payload.get("urls")):
        candidates.append(_candidate("url", url, ["phishing_url"], context=context,
                                     confidence=confidence))
        host = urlparse(refang_ioc(str(url))).hostname
        if host and not validate_ip(host):
            candidates.append(_candidate("domain", host, ["url_host"], context=context,
                                         confidence=confidence))

    for attachment in _as_list(payload.get("attachments")):
        if not isinstance(attachment, dict):
            continue
        attachment_context = dict(context, file_name=attachment.get("name"))
        for key in ("sha256", "sha1", "md5", "hash"):
            if attachment.get(key):
                candidate = _hash_candidate(
                    attachment[key], ["attachment"],
                    context=attachment_context, confidence=confidence,
                )
                if candidate:
                    candidates.append(candidate)

    for recipient in _as_list(_first(payload, "recipients", "to")):
        candidates.append(_candidate(
            "username", recipient, ["recipient"], context=context, confidence=20
        ))

    return candidates


def edr_adapter(payload: Dict[str, Any]) -> List[Candidate]:
    """Endpoint detection and response alerts."""
    candidates: List[Candidate] = []

    host = _first(payload, "hostname", "device_name", "host", "computer_name")
    detection = _first(payload, "detection_name", "detection", "threat_name", "rule")
    tags = [str(t) for t in _as_list(payload.get("tags"))]
    if detection and "ransom" in str(detection).lower():
        tags.append("ransomware")

    context = {
        "detection": detection,
        "files_encrypted": payload.get("files_encrypted"),
        "files_renamed": payload.get("files_renamed"),
        "command_line": payload.get("command_line"),
        "pid": payload.get("pid"),
    }
    context = {k: v for k, v in context.items() if v is not None}

    def add(ioc_type: str, value: Any, extra_tags: List[str]):
        if value:
            candidates.append(_candidate(
                ioc_type, value, tags + extra_tags, context=context, asset=host
            ))

    add("hostname", host, ["affected_host"])
    add("process", _first(payload, "process_name", "process", "image"), ["malicious_process"])
    add("file_path", _first(payload, "file_path", "path"), ["malicious_file"])
    add("username", _first(payload, "username", "user", "account"), ["account"])
    add("ip", _first(payload, "remote_ip", "remote_address"), ["c2"])
    add("domain", _first(payload, "remote_domain"), ["c2"])

    for key in ("sha256", "sha1", "md5", "file_hash"):
        if payload.get(key):
            candidate = _hash_candidate(
                payload[key], tags + ["malware_hash"], context=context, asset=host
            )
            if candidate:
                candidates.append(candidate)

    return candidates


def network_adapter(payload: Dict[str, Any]) -> List[Candidate]:
    """Network sensor, firewall and WAF alerts."""
    candidates: List[Candidate] = []

    context = {
        "pps": _first(payload, "pps", "packets_per_second"),
        "rps": _first(payload, "rps", "requests_per_second"),
        "bytes_out": payload.get("bytes_out"),
        "failed_logins": payload.get("failed_logins"),
        "dst_port": _first(payload, "dst_port", "dest_port"),
        "protocol": payload.get("protocol"),
        "direction": payload.get("direction"),
    }
    context = {k: v for k, v in context.items() if v is not None}

    src = _first(payload, "src_ip", "source_ip")
    dst = _first(payload, "dst_ip", "dest_ip", "destination_ip")
    asset = payload.get("host")
    src_private = isinstance(src, str) and is_private_ip(src)
    dst_private = isinstance(dst, str) and is_private_ip(dst)

    # Private addresses are our own assets, not indicators
    if dst_private:
        asset = asset or dst
    elif src_private:
        asset = asset or src

    if src and (not src_private or dst_private):
        role = "internal" if src_private else "source"
        candidates.append(_candidate("ip", src, [role], context=context))
    if dst and not dst_private:
        candidates.append(_candidate("ip", dst, ["destination"], context=context))

    for extra in _as_list(payload.get("sources")):
        candidates.append(_candidate("ip", extra, ["source"], context=context))

    domain = _first(payload, "domain", "query", "sni")
    if domain:
        candidates.append(_candidate("domain", domain, ["network_domain"], context=context))

    url = payload.get("url")
    if url:
        candidates.append(_candidate("url", url, ["network_url"], context=context))

    user = _first(payload, "username", "user")
    if user:
        candidates.append(_candidate("username", user, ["account"], context=context))

    if asset:
        for candidate in candidates:
            candidate.setdefault("asset", asset)
        candidates.append(_candidate(
            "hostname", asset, ["affected_host"], context=context, asset=asset
        ))

    return candidates


def siem_adapter(payload: Dict[str, Any]) -> List[Candidate]:
    """SIEM correlation alerts carrying an explicit indicator list."""
    candidates: List[Candidate] = []
    rule = payload.get("rule")
    host = payload.get("host")
    context = {"rule": rule} if rule else {}

    for item in _as_list(payload.get("indicators")):
        if isinstance(item, str):
            candidates.append(_candidate(None, item, [], context=context, asset=host))
        elif isinstance(item, dict):
            candidates.append(_candidate(
                item.get("type"),
                item.get("value"),
                _as_list(item.get("tags")),
                context=dict(context, **item.get("context", {})),
                confidence=item.get("confidence"),
                asset=item.get("asset", host),
            ))

    if host:
        candidates.append(_candidate("hostname", host, ["affected_host"],
                                     context=context, asset=host))
    return candidates


def manual_adapter(payload: Dict[str, Any]) -> List[Candidate]:
    """Analyst-submitted indicators: {"type", "value"} or {"text"}."""
    if "text" in payload and "value" not in payload:
        return from_text(str(payload["text"]), ["manual"])

    return [_candidate(
        payload.get("type"),
        payload.get("value"),
        ["manual"] + _as_list(payload.get("tags")),
        confidence=payload.get("confidence"),
        asset=payload.get("asset"),
        context=payload.get("context"),
    )]


BUILTIN_ADAPTERS = {
    "email_gateway": email_gateway_adapter,
    "edr": edr_adapter,
    "network": network_adapter,
    "siem": siem_adapter,
    "manual": manual_adapter,
}
