"""
SOARKit - Security Incident Containment Orchestration
=====================================================

Automated containment for security incidents: alerts and IoCs from email
gateways, EDR agents and network sensors are normalized, classified, matched
to a response playbook and carried out against external systems, with
volatile evidence captured first and every decision written to a tamper-evident
audit log.

Modules:
    - ingest: Indicator normalization from heterogeneous sources
    - incident: Classification, playbooks, containment, evidence, audit
    - orchestrator: End-to-end response runs
    - cli: Command-line interface

License: MIT
"""

__version__ = "1.0.0"
__author__ = "SOARKit Contributors"
__license__ = "MIT"

from soarkit.core.config import Config
from soarkit.core.logger import setup_logging

# Console logging only; file handlers are attached by the CLI from config
setup_logging()

__all__ = [
    "Config",
    "__version__",
    "__author__",
    "__license__",
]
