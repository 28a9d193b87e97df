"""
Unit tests for subscription filter policy validation and the idempotent setter.
"""

import json

import pytest

from search_forwarder.errors import FilterPolicyError
from search_forwarder.filter_policy import (
    FILTER_POLICY_ATTRIBUTE,
    FilterPolicySetter,
    InMemorySubscriptionRegistry,
    JsonFileSubscriptionRegistry,
    parse_filter_policy,
)


@pytest.mark.parametrize(
    "policy",
    [
        {"event_type": ["order_placed", "order_cancelled"]},
        {"store": [{"prefix": "eu-"}]},
        {"price": [{"numeric": [">=", 0, "<", 100]}]},
        {"customer": [{"anything-but": ["test", "internal"]}]},
        {"region": [{"exists": True}], "tier": [1, 2]},
    ],
)
def test_valid_policies(policy):
    assert parse_filter_policy(json.dumps(policy)) == policy


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        "{}",
        '{"a": "order"}',
        '{"a": []}',
        '{"a": [true]}',
        '{"a": [{"prefix": ""}]}',
        '{"a": [{"numeric": [">", 1, "<"]}]}',
        '{"a": [{"numeric": ["~", 1]}]}',
        '{"a": [{"exists": "yes"}]}',
        '{"a": [{"suffix": "x"}]}',
        '{"a": [{"prefix": "x", "exists": true}]}',
    ],
)
def test_invalid_policies(raw):
    with pytest.raises(FilterPolicyError):
        parse_filter_policy(raw)


@pytest.mark.asyncio
async def test_setter_writes_once_and_is_idempotent():
    registry = InMemorySubscriptionRegistry()
    setter = FilterPolicySetter(registry)

    assert await setter.apply("sub-1", '{"type": ["order"], "amount": [{"numeric": [">", 0]}]}')
    # same policy, different key order and whitespace
    assert not await setter.apply("sub-1", {"amount": [{"numeric": [">", 0]}], "type": ["order"]})
    assert registry.set_calls == 1

    stored = registry.attributes["sub-1"][FILTER_POLICY_ATTRIBUTE]
    assert json.loads(stored) == {"type": ["order"], "amount": [{"numeric": [">", 0]}]}


@pytest.mark.asyncio
async def test_setter_replaces_changed_policy():
    registry = InMemorySubscriptionRegistry()
    setter = FilterPolicySetter(registry)
    await setter.apply("sub-1", {"type": ["order"]})
    assert await setter.apply("sub-1", {"type": ["refund"]})
    assert registry.set_calls == 2


@pytest.mark.asyncio
async def test_setter_rejects_bad_input_without_writing():
    registry = InMemorySubscriptionRegistry()
    setter = FilterPolicySetter(registry)
    with pytest.raises(FilterPolicyError):
        await setter.apply("sub-1", "{broken")
    with pytest.raises(FilterPolicyError):
        await setter.apply("", {"type": ["order"]})
    assert registry.set_calls == 0


@pytest.mark.asyncio
async def test_json_file_registry_persists(tmp_path):
    path = tmp_path / "subs" / "subscriptions.json"
    setter = FilterPolicySetter(JsonFileSubscriptionRegistry(path))

    assert await setter.apply("arn:sub:1", {"type": ["order"]})
    assert not await FilterPolicySetter(JsonFileSubscriptionRegistry(path)).apply(
        "arn:sub:1", {"type": ["order"]}
    )
    data = json.loads(path.read_text())
    assert json.loads(data["arn:sub:1"][FILTER_POLICY_ATTRIBUTE]) == {"type": ["order"]}
