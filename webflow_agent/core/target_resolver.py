"""Target resolution: pick the element a logical instruction refers to.

The ``TargetResolver`` turns a ``TargetDescriptor`` and a
``DocumentSnapshot`` into a ``ResolutionResult``.  It is a pure-logic
module with no side effects and no waiting: given the same snapshot and
descriptor it always returns the same element.  Waiting and retrying
are the caller's responsibility.

Resolution runs strictly in this order:

1. **Enumerate** the union of every candidate selector's matches, in
   document order, de-duplicated by node id.
2. **Filter** candidates failing ``require_visible`` or
   ``require_enabled``.
3. **Text gate** on the normalized (trimmed, lower-cased) text.
4. **Layer restriction** for ``HIGHEST_LAYER_DEPTH``: keep only the
   leaves inside the visible container with the highest stacking value
   that holds at least one gated leaf.
5. **Numeric pre-filter** for ``MIDDLE_OF_SORTED_NUMERIC_SET``: drop
   non-numeric values, values outside the plausible range, and
   excluded input kinds.
6. **Score** every survivor by summing rule deltas.
7. **Disambiguate** among the top-score tier: document order by
   default, sorted-numeric selection when requested.

This module depends only on ``webflow_agent.models`` and
``webflow_agent.config.settings``.

Typical usage::

    from webflow_agent.config.settings import get_default_settings
    from webflow_agent.core.target_resolver import TargetResolver

    resolver = TargetResolver(get_default_settings())
    result = resolver.resolve(snapshot, descriptor)
    if result.found:
        print(result.node.node_id)
"""

from __future__ import annotations

import logging
import re

import numpy as np

from webflow_agent.config.settings import Settings
from webflow_agent.models.target import (
    CandidateRejection,
    Disambiguation,
    DocumentSnapshot,
    ElementNode,
    ResolutionResult,
    RulePredicate,
    ScoreRule,
    TargetDescriptor,
    TextMatchMode,
)

logger = logging.getLogger(__name__)

# Input ``type`` values that never hold the numeric value being targeted.
_NON_NUMERIC_INPUT_TYPES: frozenset[str] = frozenset({
    "checkbox", "radio", "range", "hidden", "button", "submit",
})

_NUMERIC_STRIP = re.compile(r"[^0-9.\-]")


def parse_numeric(raw: str | None) -> float | None:
    """Parse the numeric content of a field value or text.

    Currency symbols, thousands separators and other decoration are
    stripped before parsing.

    Args:
        raw: Raw value or text.  ``None`` or blank yields ``None``.

    Returns:
        The parsed number, or ``None`` if nothing numeric remains.
    """
    if raw is None:
        return None
    cleaned = _NUMERIC_STRIP.sub("", raw)
    if not cleaned or cleaned in {"-", ".", "-."}:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


class TargetResolver:
    """Multi-strategy, scored resolver for logical target descriptors.

    The resolver is stateless: every call to ``resolve`` is independent.

    Args:
        settings: Application-wide settings.  Supplies the plausible
            numeric range and the class markers of excluded input kinds.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    # -- public API -----------------------------------------------------------

    def resolve(
        self,
        snapshot: DocumentSnapshot,
        descriptor: TargetDescriptor,
    ) -> ResolutionResult:
        """Resolve *descriptor* against *snapshot*.

        Args:
            snapshot: Elements captured for the descriptor's selectors.
            descriptor: What to look for.

        Returns:
            A ``ResolutionResult`` holding either the winning node and
            its score, or the full candidate list with the rejection
            trail.
        """
        candidates = self.enumerate(snapshot, descriptor)
        candidate_ids = tuple(n.node_id for n in candidates)
        rejections: list[CandidateRejection] = []

        survivors = self._gate(candidates, descriptor, rejections)
        if not survivors:
            return self._not_found(candidate_ids, rejections)

        if descriptor.disambiguation is Disambiguation.HIGHEST_LAYER_DEPTH:
            survivors = self._restrict_to_top_layer(
                snapshot, descriptor, survivors, rejections,
            )
        elif (
            descriptor.disambiguation
            is Disambiguation.MIDDLE_OF_SORTED_NUMERIC_SET
        ):
            survivors = self._numeric_prefilter(survivors, rejections)

        if not survivors:
            return self._not_found(candidate_ids, rejections)

        scores = self._score(survivors, descriptor.score_rules)
        top = float(scores.max())
        tier = [n for n, s in zip(survivors, scores) if s == top]

        if (
            descriptor.disambiguation
            is Disambiguation.MIDDLE_OF_SORTED_NUMERIC_SET
        ):
            winner = self._middle_of_sorted(tier)
        else:
            # Survivors are in document order, so the first of the tier
            # is the earliest.
            winner = tier[0]

        score_map = {n.node_id: float(s) for n, s in zip(survivors, scores)}
        for node in survivors:
            if node.node_id == winner.node_id:
                continue
            if score_map[node.node_id] < top:
                reason, detail = "lower_score", (
                    f"score {score_map[node.node_id]:g} < {top:g}"
                )
            else:
                reason, detail = "not_selected", "lost tie-break"
            rejections.append(
                CandidateRejection(node.node_id, reason, detail)
            )

        logger.debug(
            "resolved %s -> node %d (score %g, %d candidates)",
            descriptor.label(),
            winner.node_id,
            top,
            len(candidates),
        )
        return ResolutionResult(
            node=winner,
            score=top,
            candidates=candidate_ids,
            rejections=tuple(rejections),
            scores=score_map,
        )

    def resolve_all(
        self,
        snapshot: DocumentSnapshot,
        descriptor: TargetDescriptor,
    ) -> list[ElementNode]:
        """Return every candidate that passes filtering and the text gate.

        Used for record extraction, where every matching element is
        wanted rather than a single winner.

        Args:
            snapshot: Captured elements.
            descriptor: What to look for.

        Returns:
            Gated candidates in document order.
        """
        candidates = self.enumerate(snapshot, descriptor)
        return self._gate(candidates, descriptor, [])

    @staticmethod
    def enumerate(
        snapshot: DocumentSnapshot,
        descriptor: TargetDescriptor,
    ) -> list[ElementNode]:
        """Union the matches of every candidate selector.

        Args:
            snapshot: Captured elements.
            descriptor: Supplies the ordered candidate selectors.

        Returns:
            Distinct nodes in document order.
        """
        seen: dict[int, ElementNode] = {}
        for selector in descriptor.candidate_selectors:
            for node in snapshot.matches(selector):
                seen.setdefault(node.node_id, node)
        return sorted(seen.values(), key=lambda n: n.order)

    # -- filtering ------------------------------------------------------------

    @staticmethod
    def _gate(
        candidates: list[ElementNode],
        descriptor: TargetDescriptor,
        rejections: list[CandidateRejection],
    ) -> list[ElementNode]:
        """Apply visibility, enabled and text filters."""
        needle = ""
        mode = TextMatchMode.EXACT
        if descriptor.text_match is not None:
            needle = " ".join(descriptor.text_match.text.split()).lower()
            mode = descriptor.text_match.mode

        survivors: list[ElementNode] = []
        for node in candidates:
            if descriptor.require_visible and not node.is_visible:
                rejections.append(
                    CandidateRejection(node.node_id, "not_visible")
                )
                continue
            if descriptor.require_enabled and not node.is_enabled:
                rejections.append(
                    CandidateRejection(node.node_id, "disabled")
                )
                continue
            if descriptor.text_match is not None:
                text = node.normalized_text
                matched = (
                    text == needle if mode is TextMatchMode.EXACT
                    else needle in text
                )
                if not matched:
                    rejections.append(
                        CandidateRejection(
                            node.node_id,
                            "text_mismatch",
                            f"text {text[:60]!r}",
                        )
                    )
                    continue
            survivors.append(node)
        return survivors

    def _restrict_to_top_layer(
        self,
        snapshot: DocumentSnapshot,
        descriptor: TargetDescriptor,
        leaves: list[ElementNode],
        rejections: list[CandidateRejection],
    ) -> list[ElementNode]:
        """Keep only the leaves inside the topmost qualifying container.

        A container qualifies when it is visible (if the descriptor
        requires visibility) and holds at least one gated leaf.  The
        container with the highest ``z_index`` wins; equal values go to
        the earliest in document order.  When no container qualifies the
        leaves are returned unchanged.
        """
        containers: dict[int, ElementNode] = {}
        for selector in descriptor.container_selectors:
            for node in snapshot.matches(selector):
                containers.setdefault(node.node_id, node)

        best: ElementNode | None = None
        best_leaves: list[ElementNode] = []
        for container in sorted(containers.values(), key=lambda n: n.order):
            if descriptor.require_visible and not container.is_visible:
                continue
            inside = [
                leaf for leaf in leaves
                if snapshot.is_descendant(leaf, container.node_id)
            ]
            if not inside:
                continue
            if best is None or container.z_index > best.z_index:
                best = container
                best_leaves = inside

        if best is None:
            logger.debug(
                "no container holds %s; resolving across the document",
                descriptor.label(),
            )
            return leaves

        kept = {leaf.node_id for leaf in best_leaves}
        for leaf in leaves:
            if leaf.node_id not in kept:
                rejections.append(
                    CandidateRejection(
                        leaf.node_id,
                        "outside_top_layer",
                        f"top container {best.node_id} z={best.z_index}",
                    )
                )
        return best_leaves

    def _numeric_prefilter(
        self,
        candidates: list[ElementNode],
        rejections: list[CandidateRejection],
    ) -> list[ElementNode]:
        """Drop non-numeric, out-of-range and excluded-kind candidates."""
        low = self._settings.numeric_min_plausible
        high = self._settings.numeric_max_plausible
        markers = tuple(
            m.lower() for m in self._settings.numeric_excluded_class_markers
        )

        kept: list[ElementNode] = []
        for node in candidates:
            class_name = node.class_name.lower()
            input_type = node.attributes.get("type", "").lower()
            if (
                any(m in class_name for m in markers)
                or input_type in _NON_NUMERIC_INPUT_TYPES
            ):
                rejections.append(
                    CandidateRejection(
                        node.node_id,
                        "excluded_kind",
                        f"class={node.class_name!r} type={input_type!r}",
                    )
                )
                continue
            number = parse_numeric(self._raw_value(node))
            if number is None:
                rejections.append(
                    CandidateRejection(node.node_id, "not_numeric")
                )
                continue
            if not low <= number <= high:
                rejections.append(
                    CandidateRejection(
                        node.node_id,
                        "out_of_range",
                        f"{number:g} outside [{low:g}, {high:g}]",
                    )
                )
                continue
            kept.append(node)
        return kept

    # -- scoring --------------------------------------------------------------

    def _score(
        self,
        survivors: list[ElementNode],
        rules: tuple[ScoreRule, ...],
    ) -> np.ndarray:
        """Sum rule deltas per survivor, in rule order."""
        scores = np.zeros(len(survivors), dtype=float)
        for rule in rules:
            mask = np.fromiter(
                (self._rule_holds(rule, n) for n in survivors),
                dtype=bool,
                count=len(survivors),
            )
            scores += np.where(mask, rule.delta, 0.0)
        return scores

    @staticmethod
    def _rule_holds(rule: ScoreRule, node: ElementNode) -> bool:
        """Evaluate a scoring predicate against a node."""
        value = rule.value.lower()
        predicate = rule.predicate
        if predicate is RulePredicate.TEXT_EQUALS:
            return node.normalized_text == value
        if predicate is RulePredicate.TEXT_CONTAINS:
            return value in node.normalized_text
        if predicate is RulePredicate.CLASS_CONTAINS:
            return value in node.class_name.lower()
        if predicate is RulePredicate.ROLE_EQUALS:
            return node.attributes.get("role", "").lower() == value
        if predicate is RulePredicate.ATTR_EQUALS:
            return node.attributes.get(rule.attribute, "").lower() == value
        if predicate is RulePredicate.ATTR_CONTAINS:
            return value in node.attributes.get(rule.attribute, "").lower()
        if predicate is RulePredicate.TAG_EQUALS:
            return node.tag.lower() == value
        if predicate is RulePredicate.MATCHED_SELECTOR:
            return rule.value in node.matched_selectors
        return False

    # -- numeric disambiguation -----------------------------------------------

    def _middle_of_sorted(self, tier: list[ElementNode]) -> ElementNode:
        """Select the logically-middle value among numeric fields.

        The tier is sorted ascending by value (stable, so equal values
        keep document order).  With three fields the middle one wins;
        with two, the higher one (minimum/target ordering); with one,
        that field.  With more than three the element at index
        ``n // 2`` wins: the upper median, consistent with the
        two-field rule.
        """
        values = np.array(
            [parse_numeric(self._raw_value(n)) for n in tier], dtype=float,
        )
        order = np.argsort(values, kind="stable")
        count = len(tier)
        if count == 1:
            index = 0
        elif count in (2, 3):
            index = 1
        else:
            index = count // 2
            logger.info(
                "numeric disambiguation over %d fields; using upper median",
                count,
            )
        return tier[int(order[index])]

    @staticmethod
    def _raw_value(node: ElementNode) -> str:
        """Return the field value, falling back to text content."""
        return node.value if node.value is not None else node.text

    @staticmethod
    def _not_found(
        candidate_ids: tuple[int, ...],
        rejections: list[CandidateRejection],
    ) -> ResolutionResult:
        """Build a not-found result with the full rejection trail."""
        return ResolutionResult(
            node=None,
            candidates=candidate_ids,
            rejections=tuple(rejections),
        )

    def __repr__(self) -> str:
        """Human-readable summary."""
        return (
            f"TargetResolver(range=[{self._settings.numeric_min_plausible:g}, "
            f"{self._settings.numeric_max_plausible:g}])"
        )
