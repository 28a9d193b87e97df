"""
Subscription filter policy: a one-shot, idempotent deployment step.

A filter policy is a JSON object mapping message-attribute names to a list
of conditions. A condition is a string, a number, or an operator object:
``{"prefix": "..."}``, ``{"anything-but": value-or-list}``,
``{"numeric": ["<", 10, ">=", 0]}`` or ``{"exists": bool}``.

The setter validates the policy, compares its canonical form with what the
subscription already has, and writes only when they differ. It has no link
to the running pipeline.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from loguru import logger

from .errors import FilterPolicyError

FILTER_POLICY_ATTRIBUTE = "FilterPolicy"

_NUMERIC_OPS = {"=", "<", "<=", ">", ">="}


def _check_condition(attr: str, cond: Any) -> None:
    if isinstance(cond, bool):
        raise FilterPolicyError(f"{attr}: bare booleans are not valid conditions")
    if isinstance(cond, (str, int, float)):
        return
    if not isinstance(cond, dict) or len(cond) != 1:
        raise FilterPolicyError(f"{attr}: condition must be a value or a single-key operator object")
    op, arg = next(iter(cond.items()))
    if op == "prefix":
        if not isinstance(arg, str) or not arg:
            raise FilterPolicyError(f"{attr}: prefix needs a non-empty string")
    elif op == "exists":
        if not isinstance(arg, bool):
            raise FilterPolicyError(f"{attr}: exists needs true/false")
    elif op == "anything-but":
        values = arg if isinstance(arg, list) else [arg]
        if not values or not all(
            isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in values
        ):
            raise FilterPolicyError(f"{attr}: anything-but needs a value or list of values")
    elif op == "numeric":
        if not isinstance(arg, list) or len(arg) not in (2, 4) or len(arg) % 2:
            raise FilterPolicyError(f"{attr}: numeric needs [op, n] or [op, n, op, n]")
        for i in range(0, len(arg), 2):
            o, n = arg[i], arg[i + 1]
            if o not in _NUMERIC_OPS or isinstance(n, bool) or not isinstance(n, (int, float)):
                raise FilterPolicyError(f"{attr}: invalid numeric comparison {o!r} {n!r}")
    else:
        raise FilterPolicyError(f"{attr}: unknown operator {op!r}")


def parse_filter_policy(raw: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Parse and validate a filter policy given as JSON text or a mapping."""
    if isinstance(raw, str):
        try:
            policy = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise FilterPolicyError(f"filter policy is not valid JSON: {exc}") from exc
    else:
        policy = dict(raw)
    if not isinstance(policy, dict) or not policy:
        raise FilterPolicyError("filter policy must be a non-empty JSON object")
    for attr, conditions in policy.items():
        if not isinstance(attr, str) or not attr:
            raise FilterPolicyError("attribute names must be non-empty strings")
        if not isinstance(conditions, list) or not conditions:
            raise FilterPolicyError(f"{attr}: conditions must be a non-empty list")
        for cond in conditions:
            _check_condition(attr, cond)
    return policy


def canonical_json(policy: Mapping[str, Any]) -> str:
    return json.dumps(policy, sort_keys=True, separators=(",", ":"))


class SubscriptionRegistry(ABC):
    """Where subscription attributes live (the messaging service, or a stand-in)."""

    @abstractmethod
    async def get_attribute(self, subscription_id: str, name: str) -> Optional[str]: ...

    @abstractmethod
    async def set_attribute(self, subscription_id: str, name: str, value: str) -> None: ...


class InMemorySubscriptionRegistry(SubscriptionRegistry):
    def __init__(self) -> None:
        self.attributes: Dict[str, Dict[str, str]] = {}
        self.set_calls = 0

    async def get_attribute(self, subscription_id: str, name: str) -> Optional[str]:
        return self.attributes.get(subscription_id, {}).get(name)

    async def set_attribute(self, subscription_id: str, name: str, value: str) -> None:
        self.set_calls += 1
        self.attributes.setdefault(subscription_id, {})[name] = value


class JsonFileSubscriptionRegistry(SubscriptionRegistry):
    """Subscription attributes persisted in a local JSON file ({sub_id: {name: value}})."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> Dict[str, Dict[str, str]]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text("utf-8") or "{}")

    def _save(self, data: Dict[str, Dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), "utf-8")
        tmp.replace(self.path)

    async def get_attribute(self, subscription_id: str, name: str) -> Optional[str]:
        data = await asyncio.to_thread(self._load)
        return data.get(subscription_id, {}).get(name)

    async def set_attribute(self, subscription_id: str, name: str, value: str) -> None:
        data = await asyncio.to_thread(self._load)
        data.setdefault(subscription_id, {})[name] = value
        await asyncio.to_thread(self._save, data)


class FilterPolicySetter:
    """Applies a filter policy to a subscription, writing only on change."""

    def __init__(self, registry: SubscriptionRegistry):
        self.registry = registry

    async def apply(self, subscription_id: str, policy: Union[str, Mapping[str, Any]]) -> bool:
        """Returns True if the subscription was updated, False if it already matched."""
        if not subscription_id:
            raise FilterPolicyError("subscription id is required")
        desired = canonical_json(parse_filter_policy(policy))

        current_raw = await self.registry.get_attribute(subscription_id, FILTER_POLICY_ATTRIBUTE)
        if current_raw:
            try:
                current = canonical_json(json.loads(current_raw))
            except json.JSONDecodeError:
                current = None
            if current == desired:
                logger.info(f"Filter policy for {subscription_id} already up to date")
                return False

        await self.registry.set_attribute(subscription_id, FILTER_POLICY_ATTRIBUTE, desired)
        logger.info(f"Filter policy applied to {subscription_id}: {desired}")
        return True
