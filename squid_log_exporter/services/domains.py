"""
Domain classification and cardinality control.

DomainClassifier decides which domains get extended (labelled) tracking;
CardinalityController bounds how many domains get basic per-domain series.
"""

import threading
from enum import Enum
from typing import Dict, List, Sequence, Set, Tuple

from squid_log_exporter.models.data_models import DomainPattern, MonitoredDomainRule

OVERFLOW_HOST = "__other__"
OVERFLOW_PORT = "0"


def domain_key(host: str, port: str) -> str:
    return f"{host}:{port}"


class DomainClassifier:
    """Matches (host, port) against exact monitored rules, then wildcard patterns"""

    def __init__(
        self,
        rules: Sequence[MonitoredDomainRule] = (),
        patterns: Sequence[DomainPattern] = (),
    ):
        self.rules: List[MonitoredDomainRule] = list(rules)
        self.patterns: List[DomainPattern] = list(patterns)

    def classify(self, host: str, port: str) -> Tuple[bool, Dict[str, str]]:
        """Return (is_monitored, labels); first match wins, exact rules first"""
        for rule in self.rules:
            if rule.host == host and (not rule.port or rule.port == port):
                return True, dict(rule.labels)

        for pattern in self.patterns:
            if pattern.matches(host):
                return True, dict(pattern.labels)

        return False, {}

    @property
    def custom_label_keys(self) -> List[str]:
        keys: Set[str] = set()
        for rule in self.rules:
            keys.update(rule.labels)
        for pattern in self.patterns:
            keys.update(pattern.labels)
        return sorted(keys)


class Admission(str, Enum):
    INDIVIDUAL = "individual"
    OVERFLOW = "overflow"


class CardinalityController:
    """
    Bounds the number of individually tracked "all domains" series.

    The seen-set lives as long as the process and never shrinks, so a domain
    admitted once keeps its own series.
    """

    def __init__(self, max_domains: int):
        self.max_domains = max_domains
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def admit(self, key: str) -> Admission:
        with self._lock:
            if key in self._seen:
                return Admission.INDIVIDUAL
            if len(self._seen) < self.max_domains:
                self._seen.add(key)
                return Admission.INDIVIDUAL
            return Admission.OVERFLOW

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
