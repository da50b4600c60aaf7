import pytest

from assignment_config import DEFAULT_CONFIG
from assignment_errors import ConfigurationError
from priority_registry import (
    RULE_REGISTRY,
    RuleFamily,
    RuleKind,
    StabilityParams,
    derive_factor_weights,
    enabled_rules,
    find_rule,
    parse_priorities,
    position_label,
    priority_weight,
)
from tests.utils import priorities

OBJECTIVE = DEFAULT_CONFIG["OBJECTIVE"]


def test_every_rule_id_maps_to_one_kind() -> None:
    kinds = [d.kind for d in RULE_REGISTRY.values()]
    assert len(kinds) == len(set(kinds)) == len(RuleKind)
    for rule_id, definition in RULE_REGISTRY.items():
        assert definition.kind.value == rule_id


def test_default_priorities_parse_sorted() -> None:
    rules = parse_priorities(DEFAULT_CONFIG["PRIORITIES"])
    assert [r.position for r in rules] == sorted(r.position for r in rules)
    assert rules[0].kind is RuleKind.MANUAL_HOLDOVER
    assert rules[0].family is RuleFamily.FILTER
    assert find_rule(rules, RuleKind.TEAM_ALIGNMENT).family is RuleFamily.MODIFIER
    # sales tools ships disabled
    assert find_rule(rules, RuleKind.SALES_TOOLS_BUCKET) is None


def test_typed_params_are_built() -> None:
    rules = parse_priorities([
        {"id": "stability_accounts", "position": 0, "params": {"pe_firm": False, "renewal_soon_days": 30}},
    ])
    params = rules[0].params
    assert isinstance(params, StabilityParams)
    assert params.pe_firm is False
    assert params.renewal_soon_days == 30
    assert params.cre_risk is True


@pytest.mark.parametrize(
    "entries, message",
    [
        ([{"id": "mystery", "position": 0}], "Unknown priority"),
        ([{"id": "geography", "position": 0}, {"id": "geography", "position": 1}], "more than once"),
        ([{"id": "geography", "position": 0}, {"id": "continuity", "position": 0}], "share position"),
        ([{"id": "geography", "position": "first"}], "integer position"),
        ([{"id": "geography", "position": 0, "params": {"radius": 5}}], "Unknown parameter"),
        ([{"position": 0}], "'id'"),
    ],
)
def test_invalid_priorities_rejected(entries, message) -> None:
    with pytest.raises(ConfigurationError, match=message):
        parse_priorities(entries)


def test_position_labels() -> None:
    rules = parse_priorities(priorities("manual_holdover", "geography", "arr_balance", disabled=["continuity"]))
    assert position_label("manual_holdover", rules) == "P0"
    assert position_label("geography", rules) == "P1"
    assert position_label("arr_balance", rules) == "RO"
    assert position_label("continuity", rules) == "RO"
    assert [r.rule_id for r in enabled_rules(rules)] == ["manual_holdover", "geography", "arr_balance"]


def test_priority_weight_is_reciprocal_of_position() -> None:
    assert priority_weight(0) == 1.0
    assert priority_weight(3) == pytest.approx(0.25)


def test_factor_weights_from_positions() -> None:
    rules = parse_priorities(priorities("continuity", "geography", "team_alignment"))
    w = derive_factor_weights(rules, OBJECTIVE)
    raw = [1.0, 0.5, 1 / 3]
    total = sum(raw)
    assert w.continuity == pytest.approx(raw[0] / total)
    assert w.geography == pytest.approx(raw[1] / total)
    assert w.team == pytest.approx(raw[2] / total)


def test_geo_and_continuity_splits_evenly() -> None:
    rules = parse_priorities(priorities("geo_and_continuity", "team_alignment"))
    w = derive_factor_weights(rules, OBJECTIVE)
    assert w.continuity == pytest.approx(w.geography)
    assert w.continuity + w.geography + w.team == pytest.approx(1.0)


def test_zero_weights_floored_then_renormalized() -> None:
    rules = parse_priorities(priorities("continuity"))
    w = derive_factor_weights(rules, OBJECTIVE)
    assert w.geography == pytest.approx(0.05 / 1.1)
    assert w.team == pytest.approx(0.05 / 1.1)
    assert w.continuity == pytest.approx(1.0 / 1.1)


def test_default_weights_when_no_scoring_rule() -> None:
    rules = parse_priorities(priorities("manual_holdover", "arr_balance"))
    w = derive_factor_weights(rules, OBJECTIVE)
    assert (w.continuity, w.geography, w.team) == (0.35, 0.35, 0.30)
