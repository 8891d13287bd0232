
import hashlib
import ipaddress
import re
import json
import csv
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse
import requests


def hash_file(file_path: Union[str, Path], algorithms: List[str] = None) -> Dict[str, str]:
    """Calculate file hashes."""
    if algorithms is None:
        algorithms = ["md5", "sha1", "sha256"]

    hashes = {}
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    hash_objects = {alg: hashlib.new(alg) for alg in algorithms}

    with open(file_path, "rb") as f:
        while chunk := f.read(8192):
            for h in hash_objects.values():
                h.update(chunk)

    for alg, h in hash_objects.items():
        hashes[alg] = h.hexdigest()

    return hashes


def hash_string(data: str, algorithm: str = "sha256") -> str:
    """Calculate hash of a string."""
    return hashlib.new(algorithm, data.encode()).hexdigest()


def validate_ip(ip: str) -> bool:
    """Validate an IP address."""
    try:
        ipaddress.ip_address(ip)
        return True
    except ValueError:
        return False


def validate_domain(domain: str) -> bool:
    """Validate a domain name."""
    pattern = r'^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$'
    return bool(re.match(pattern, domain))


def validate_url(url: str) -> bool:
    """Validate a URL."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https", "ftp"), result.netloc])
    except ValueError:
        return False


def validate_email(email: str) -> bool:
    """Validate an email address."""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email))


def validate_hash(hash_value: str) -> Optional[str]:
    """Validate and identify hash type."""
    hash_value = hash_value.lower().strip()

    if re.match(r'^[a-f0-9]{32}$', hash_value):
        return "md5"
    elif re.match(r'^[a-f0-9]{40}$', hash_value):
        return "sha1"
    elif re.match(r'^[a-f0-9]{64}$', hash_value):
        return "sha256"
    return None


def is_private_ip(ip: str) -> bool:
    """Check if an IP address is private."""
    try:
        return ipaddress.ip_address(ip).is_private
    except ValueError:
        return False


def safe_request(
    url: str,
    method: str = "GET",
    timeout: int = 10,
    verify_ssl: bool = True,
    **kwargs
) -> Optional[requests.Response]:
    """Make an HTTP request, returning None on transport errors."""
    try:
        return requests.request(
            method,
            url,
            timeout=timeout,
            verify=verify_ssl,
            **kwargs
        )
    except requests.RequestException:
        return None


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(timestamp: Any) -> Optional[datetime]:
    """Parse ISO strings, common log formats and epoch seconds into UTC."""
    if timestamp is None or isinstance(timestamp, bool):
        return None

    if isinstance(timestamp, datetime):
        return ensure_utc(timestamp)

    if isinstance(timestamp, (int, float)):
        # Epoch milliseconds are common in EDR exports
        if timestamp > 1e12:
            timestamp = timestamp / 1000
        try:
            return datetime.fromtimestamp(timestamp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(timestamp).strip()
    if not text:
        return None

    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    formats = [
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%Y-%m-%d %H:%M:%S",
        "%Y/%m/%d %H:%M:%S",
        "%d/%m/%Y %H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def export_to_json(data: Any, file_path: Union[str, Path], indent: int = 2) -> None:
    """Export data to JSON file."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    with open(file_path, "w") as f:
        json.dump(data, f, indent=indent, default=str)


def export_to_csv(
    data: List[Dict[str, Any]],
    file_path: Union[str, Path],
    fieldnames: List[str] = None
) -> None:
    """Export data to CSV file."""
    if not data:
        return

    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    if fieldnames is None:
        fieldnames = list(data[0].keys())

    with open(file_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(data)


def defang_ioc(ioc: str) -> str:
    """Defang an IOC for safe sharing."""
    ioc = ioc.replace("http://", "hxxp://")
    ioc = ioc.replace("https://", "hxxps://")
    ioc = ioc.replace(".", "[.]")
    ioc = ioc.replace("@", "[@]")
    return ioc


def refang_ioc(ioc: str) -> str:
    """Refang an IOC for analysis."""
    ioc = ioc.replace("hxxp://", "http://")
    ioc = ioc.replace("hxxps://", "https://")
    ioc = ioc.replace("[.]", ".")
    ioc = ioc.replace("(.)", ".")
    ioc = ioc.replace("[@]", "@")
    return ioc


def extract_iocs(text: str) -> Dict[str, List[str]]:
    """Extract IOCs from free text. Results are sorted for stable output."""
    iocs = {
        "ips": [],
        "domains": [],
        "urls": [],
        "emails": [],
        "md5": [],
        "sha1": [],
        "sha256": [],
    }

    text = refang_ioc(text)

    ip_pattern = r'\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b'
    iocs["ips"] = sorted(set(re.findall(ip_pattern, text)))

    url_pattern = r'https?://[^\s<>"{}|\\^`\[\]]+'
    urls = sorted(set(u.rstrip(".,;)") for u in re.findall(url_pattern, text)))
    iocs["urls"] = urls

    email_pattern = r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}'
    emails = sorted(set(re.findall(email_pattern, text)))
    iocs["emails"] = emails

    iocs["md5"] = sorted(set(re.findall(r'\b[a-fA-F0-9]{32}\b', text)))
    iocs["sha1"] = sorted(set(re.findall(r'\b[a-fA-F0-9]{40}\b', text)))
    iocs["sha256"] = sorted(set(re.findall(r'\b[a-fA-F0-9]{64}\b', text)))

    # Domains already covered by a URL or email are not repeated
    covered = {urlparse(u).hostname for u in urls} | {e.split("@", 1)[1] for e in emails}
    domain_pattern = r'\b(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+(?:com|net|org|io|co|info|biz|xyz|top|online|site|club|tech|app|dev|cloud|ru|cn|tk|ml|ga|cf|gq)\b'
    domains = {d.lower() for d in re.findall(domain_pattern, text, re.IGNORECASE)}
    iocs["domains"] = sorted(d for d in domains if d not in {c.lower() for c in covered if c})

    return iocs
