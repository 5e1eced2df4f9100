"""Plan authoring: build a ``WorkflowPlan`` from static JSON data.

Plans are authored independently of the engine as ordered data.  Every
vendor-specific selector and text string lives in the plan document, never
in engine code.

Document format::

    {
      "name": "reprice",
      "start_url": "https://app.example.com/pricing?listings=42",
      "variables": {"listing_id": "42"},
      "defaults": {"post_delay": 3.0,
                   "retry": {"max_attempts": 3, "base_delay": 1.0,
                             "backoff": "linear"}},
      "phases": [
        {"name": "pricing", "start_step": 0, "url_pattern": "/pricing"},
        {"name": "reports", "start_step": 5, "url_pattern": "/reports"}
      ],
      "steps": [
        {"description": "Open customizations",
         "command": {"type": "click",
                     "target": {"selectors": ["button", "[role=button]"],
                                "text": "Customize", "text_mode": "contains",
                                "score_rules": [{"predicate": "text_equals",
                                                 "value": "customize",
                                                 "delta": 100}]}},
         "post_delay": 5.0,
         "on_disconnect_expected": true}
      ]
    }

Enum-valued fields use the lower-case enum values (``"click"``,
``"highest_layer_depth"``, ``"text_contains"``...).
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from webflow_agent.config.settings import Settings, get_default_settings
from webflow_agent.models.commands import Command, CommandType
from webflow_agent.models.target import (
    Disambiguation,
    RulePredicate,
    ScoreRule,
    TargetDescriptor,
    TextMatch,
    TextMatchMode,
)
from webflow_agent.models.workflow import (
    BackoffShape,
    Phase,
    RetryPolicy,
    Step,
    WorkflowPlan,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


class PlanError(ValueError):
    """A plan document is malformed."""


def load_plan(path: str | Path, settings: Settings | None = None) -> WorkflowPlan:
    """Read and build a plan from a JSON file.

    Args:
        path: Plan document location.
        settings: Supplies defaults for ``post_delay`` and retry policy.

    Returns:
        The validated plan.

    Raises:
        FileNotFoundError: If *path* does not exist.
        PlanError: If the document is malformed.
    """
    with Path(path).open("r", encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise PlanError(f"{path}: invalid JSON: {exc}") from exc
    plan = plan_from_dict(data, settings)
    logger.info(
        "loaded plan %r: %d steps, %d phases",
        plan.name, plan.total_steps, len(plan.phases),
    )
    return plan


def plan_from_dict(
    data: dict[str, Any],
    settings: Settings | None = None,
) -> WorkflowPlan:
    """Build a plan from a decoded plan document.

    Raises:
        PlanError: If the document is malformed.
    """
    if not isinstance(data, dict):
        raise PlanError("plan document must be a JSON object")
    settings = settings or get_default_settings()

    defaults = data.get("defaults") or {}
    default_delay = float(
        defaults.get("post_delay", settings.default_post_delay_seconds)
    )
    default_retry = _parse_retry(
        defaults.get("retry") or {},
        RetryPolicy(
            max_attempts=settings.send_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
        ),
    )

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanError("plan must contain a non-empty 'steps' list")

    steps: list[Step] = []
    for index, raw in enumerate(raw_steps):
        try:
            steps.append(_parse_step(index, raw, default_delay, default_retry))
        except (KeyError, TypeError, ValueError) as exc:
            raise PlanError(f"step {index}: {exc}") from exc

    try:
        phases = tuple(
            Phase(
                name=str(p["name"]),
                start_step=int(p.get("start_step", 0)),
                url_pattern=str(p.get("url_pattern", "")),
            )
            for p in data.get("phases") or []
        )
        return WorkflowPlan(
            name=str(data.get("name", "workflow")),
            steps=tuple(steps),
            phases=phases,
            start_url=str(data.get("start_url", "")),
            variables=dict(data.get("variables") or {}),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise PlanError(str(exc)) from exc


# -- parsing helpers ----------------------------------------------------------


def _enum(enum_cls: type[E], raw: Any, field_name: str) -> E:
    try:
        return enum_cls(str(raw).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(
            f"unknown {field_name} {raw!r} (expected one of: {allowed})"
        ) from None


def _parse_retry(raw: dict[str, Any], base: RetryPolicy) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(raw.get("max_attempts", base.max_attempts)),
        base_delay=float(raw.get("base_delay", base.base_delay)),
        backoff=(
            _enum(BackoffShape, raw["backoff"], "backoff")
            if "backoff" in raw else base.backoff
        ),
    )


def _parse_step(
    index: int,
    raw: dict[str, Any],
    default_delay: float,
    default_retry: RetryPolicy,
) -> Step:
    if "id" in raw and int(raw["id"]) != index:
        raise ValueError(f"id {raw['id']} does not match position")
    command = _parse_command(raw["command"])
    return Step(
        id=index,
        command=command,
        post_delay=float(raw.get("post_delay", default_delay)),
        retry_policy=_parse_retry(raw.get("retry") or {}, default_retry),
        on_disconnect_expected=bool(raw.get("on_disconnect_expected", False)),
        phase=str(raw.get("phase", "")),
        description=str(raw.get("description", "")),
    )


def _parse_command(raw: dict[str, Any]) -> Command:
    command_type = _enum(CommandType, raw["type"], "command type")
    target = _parse_target(raw["target"]) if raw.get("target") else None
    if command_type.needs_target and target is None:
        raise ValueError(f"{command_type.value} requires a target")
    timeout = raw.get("timeout")
    return Command(
        type=command_type,
        target=target,
        value=raw.get("value"),
        value_from=str(raw.get("value_from", "")),
        offset=float(raw.get("offset", 0.0)),
        timeout=float(timeout) if timeout is not None else None,
        store_as=str(raw.get("store_as", "")),
        url=str(raw.get("url", "")),
        url_from=str(raw.get("url_from", "")),
        entity_id=str(raw.get("entity_id", "")),
        entity_from=str(raw.get("entity_from", "")),
        fields=tuple(str(f) for f in raw.get("fields") or ()),
        records_from=str(raw.get("records_from", "")),
        name=str(raw.get("name", "")),
    )


def _parse_target(raw: dict[str, Any]) -> TargetDescriptor:
    selectors = raw.get("selectors", raw.get("candidate_selectors"))
    if not selectors:
        raise ValueError("target requires at least one selector")
    text_match = None
    if raw.get("text") is not None:
        text_match = TextMatch(
            text=str(raw["text"]),
            mode=_enum(TextMatchMode, raw.get("text_mode", "exact"), "text mode"),
        )
    rules = tuple(
        ScoreRule(
            predicate=_enum(RulePredicate, r["predicate"], "predicate"),
            value=str(r.get("value", "")),
            delta=float(r["delta"]),
            attribute=str(r.get("attribute", "")),
        )
        for r in raw.get("score_rules") or ()
    )
    return TargetDescriptor(
        candidate_selectors=tuple(str(s) for s in selectors),
        text_match=text_match,
        require_visible=bool(raw.get("require_visible", True)),
        require_enabled=bool(raw.get("require_enabled", True)),
        score_rules=rules,
        disambiguation=_enum(
            Disambiguation, raw.get("disambiguation", "none"), "disambiguation",
        ),
        container_selectors=tuple(
            str(s) for s in raw.get("containers", raw.get("container_selectors")) or ()
        ),
        description=str(raw.get("description", "")),
    )
