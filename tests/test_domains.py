"""Tests for domain classification and cardinality control."""

import threading

from squid_log_exporter.models.data_models import DomainPattern, MonitoredDomainRule
from squid_log_exporter.services.domains import Admission, CardinalityController, DomainClassifier


class TestDomainClassifier:
    """Tests for monitored domain matching."""

    def test_exact_rule_with_port(self) -> None:
        classifier = DomainClassifier([MonitoredDomainRule("api.example.com", "443", {"team": "x"})])

        assert classifier.classify("api.example.com", "443") == (True, {"team": "x"})
        assert classifier.classify("api.example.com", "80") == (False, {})

    def test_rule_without_port_matches_any_port(self) -> None:
        classifier = DomainClassifier([MonitoredDomainRule("api.example.com")])

        assert classifier.classify("api.example.com", "8080")[0] is True

    def test_exact_rules_win_over_patterns(self) -> None:
        classifier = DomainClassifier(
            [MonitoredDomainRule("a.example.com", "", {"tier": "exact"})],
            [DomainPattern("*.example.com", {"tier": "pattern"})],
        )

        assert classifier.classify("a.example.com", "443") == (True, {"tier": "exact"})
        assert classifier.classify("b.example.com", "443") == (True, {"tier": "pattern"})

    def test_first_matching_pattern_wins(self) -> None:
        classifier = DomainClassifier(
            patterns=[
                DomainPattern("*.cdn.example.com", {"kind": "cdn"}),
                DomainPattern("*.example.com", {"kind": "site"}),
            ]
        )

        assert classifier.classify("img.cdn.example.com", "80")[1] == {"kind": "cdn"}

    def test_pattern_is_anchored_and_literal(self) -> None:
        pattern = DomainPattern("*.example.com")

        assert pattern.matches("www.example.com")
        assert not pattern.matches("example.com")
        assert not pattern.matches("www.exampleXcom")
        assert not pattern.matches("www.example.com.evil.net")

    def test_returned_labels_are_copies(self) -> None:
        rule = MonitoredDomainRule("api.example.com", "", {"team": "x"})
        classifier = DomainClassifier([rule])

        classifier.classify("api.example.com", "443")[1]["team"] = "changed"

        assert rule.labels == {"team": "x"}

    def test_custom_label_keys_sorted_union(self) -> None:
        classifier = DomainClassifier(
            [MonitoredDomainRule("a.com", "", {"team": "x", "env": "prod"})],
            [DomainPattern("*.b.com", {"owner": "y", "team": "z"})],
        )

        assert classifier.custom_label_keys == ["env", "owner", "team"]


class TestCardinalityController:
    """Tests for the bounded all-domains seen-set."""

    def test_admits_up_to_limit(self) -> None:
        ctl = CardinalityController(2)

        assert ctl.admit("a:80") is Admission.INDIVIDUAL
        assert ctl.admit("b:80") is Admission.INDIVIDUAL
        assert ctl.admit("c:80") is Admission.OVERFLOW
        assert len(ctl) == 2

    def test_admitted_domain_stays_individual(self) -> None:
        ctl = CardinalityController(1)
        ctl.admit("a:80")
        ctl.admit("b:80")

        assert ctl.admit("a:80") is Admission.INDIVIDUAL
        assert "a:80" in ctl
        assert "b:80" not in ctl

    def test_concurrent_admission_never_exceeds_limit(self) -> None:
        ctl = CardinalityController(50)

        def worker(offset: int) -> None:
            for i in range(100):
                ctl.admit(f"host{offset + i}:80")

        threads = [threading.Thread(target=worker, args=(n * 100,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ctl) == 50
