"""Tests for the pydantic data models."""

from ipaddress import IPv4Address, IPv6Address

import pytest
from pydantic import ValidationError

from tests.conftest import A1, A2, rule
from wsl_port_forwarder.models import (
    AddressEvent,
    AddressEventKind,
    DiscoveryResult,
    ForwardingRule,
    ManualPortConfig,
    Plan,
    ReconcileResult,
)

# ============================================================================
# ForwardingRule
# ============================================================================


class TestForwardingRule:
    def test_target_port_defaults_to_listen_port(self) -> None:
        r = ForwardingRule(listen_port=5173, target_address="172.20.1.2")
        assert r.target_port == 5173
        assert r.target_address == A1

    def test_explicit_target_port_kept(self) -> None:
        r = ForwardingRule(listen_port=80, target_address=A1, target_port=8080)
        assert r.target_port == 8080

    @pytest.mark.parametrize("port", [0, -1, 65536])
    def test_rejects_out_of_range_listen_port(self, port: int) -> None:
        with pytest.raises(ValidationError):
            ForwardingRule(listen_port=port, target_address=A1)

    def test_rejects_hostname_target(self) -> None:
        with pytest.raises(ValidationError):
            ForwardingRule(listen_port=80, target_address="wsl.local")

    def test_frozen(self) -> None:
        r = rule(5173)
        with pytest.raises(ValidationError):
            r.listen_port = 80  # type: ignore[misc]

    def test_hashable_and_equal_by_value(self) -> None:
        assert {rule(5173), rule(5173)} == {rule(5173)}

    def test_targets(self) -> None:
        assert rule(5173).targets(A1)
        assert not rule(5173).targets(A2)
        assert not rule(5173, A1, target_port=5174).targets(A1)

    def test_for_port(self) -> None:
        assert ForwardingRule.for_port(8080, A2) == rule(8080, A2)

    def test_str(self) -> None:
        assert str(rule(5173)) == "5173->172.20.1.2:5173"

    def test_ipv6_target(self) -> None:
        r = ForwardingRule(listen_port=3000, target_address="2001:db8::5")
        assert r.target_address == IPv6Address("2001:db8::5")


# ============================================================================
# ManualPortConfig
# ============================================================================


class TestManualPortConfig:
    def test_defaults(self) -> None:
        config = ManualPortConfig()
        assert config.manual_ports == set()
        assert config.enable_pm2 is True
        assert config.enable_caddy is True

    def test_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValidationError):
            ManualPortConfig.model_validate({"manual_ports": [80], "ports": [81]})

    def test_rejects_invalid_ports(self) -> None:
        with pytest.raises(ValidationError):
            ManualPortConfig(manual_ports={70000})

    def test_list_input_becomes_set(self) -> None:
        assert ManualPortConfig.model_validate({"manual_ports": [80, 80, 443]}).manual_ports == {80, 443}


# ============================================================================
# Results
# ============================================================================


class TestReconcileResult:
    def test_ok_when_nothing_failed(self) -> None:
        result = ReconcileResult(address=A1, added={80}, targeted={80})
        assert result.ok
        assert not result.total_failure

    def test_partial_failure_is_not_total(self) -> None:
        result = ReconcileResult(address=A1, added={80}, failed={9000: "denied"}, targeted={80, 9000})
        assert not result.ok
        assert not result.total_failure

    def test_every_targeted_port_failed_is_total(self) -> None:
        result = ReconcileResult(address=A1, failed={80: "denied", 443: "denied"}, targeted={80, 443})
        assert result.total_failure

    def test_cycle_error_is_total(self) -> None:
        result = ReconcileResult(address=A1, error="Cannot read host rules")
        assert not result.ok
        assert result.total_failure

    def test_nothing_targeted_is_not_total(self) -> None:
        assert not ReconcileResult(address=None).total_failure


class TestDiscoveryResult:
    def test_ports_is_union(self) -> None:
        result = DiscoveryResult(
            manual=frozenset({5173}),
            discovered={"pm2": frozenset({3000, 5173}), "caddy": frozenset({8080})},
        )
        assert result.ports == {3000, 5173, 8080}

    def test_sources_reporting(self) -> None:
        result = DiscoveryResult(discovered={"pm2": frozenset({3000}), "caddy": frozenset({3000, 80})})
        assert result.sources_reporting(3000) == ["caddy", "pm2"]
        assert result.sources_reporting(80) == ["caddy"]
        assert result.sources_reporting(443) == []


def test_plan_is_empty() -> None:
    assert Plan().is_empty
    assert not Plan(to_remove=frozenset({80})).is_empty
    assert not Plan(to_add=frozenset({rule(80)})).is_empty
    assert Plan(unchanged=frozenset({80})).is_empty


@pytest.mark.parametrize(
    ("kind", "triggers"),
    [
        (AddressEventKind.UNCHANGED, False),
        (AddressEventKind.CHANGED, True),
        (AddressEventKind.LOST, True),
    ],
)
def test_address_event_triggers_reconcile(kind: AddressEventKind, triggers: bool) -> None:
    event = AddressEvent(kind=kind, old=IPv4Address("10.0.0.1"))
    assert event.triggers_reconcile is triggers
