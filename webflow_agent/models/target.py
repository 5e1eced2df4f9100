"""Target model: document snapshots and logical target descriptions.

An ``ElementNode`` is a plain-data view of one on-page element captured
by the page bridge: its tag, attributes, text, geometry, and the
rendering facts the resolver needs (visibility, disabled/busy state,
stacking order).  A ``DocumentSnapshot`` groups the nodes captured in
one pass together with which structural selectors matched which node.

A ``TargetDescriptor`` describes *what* a command must act on without
naming a specific element; the ``TargetResolver`` turns a descriptor
and a snapshot into a ``ResolutionResult``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TextMatchMode(Enum):
    """How the text gate compares candidate text with the target string.

    Attributes:
        EXACT: Normalized text must equal the target string.
        CONTAINS: Normalized text must contain the target string.
    """

    EXACT = "exact"
    CONTAINS = "contains"


class Disambiguation(Enum):
    """Structural tie-break policy applied after scoring.

    Attributes:
        NONE: Highest score wins; document order breaks ties.
        HIGHEST_LAYER_DEPTH: Resolve inside the overlay container with
            the greatest stacking order.
        MIDDLE_OF_SORTED_NUMERIC_SET: Pick the value logically between
            a minimum and a maximum among same-shaped numeric fields.
    """

    NONE = "none"
    HIGHEST_LAYER_DEPTH = "highest_layer_depth"
    MIDDLE_OF_SORTED_NUMERIC_SET = "middle_of_sorted_numeric_set"


class RulePredicate(Enum):
    """Predicates available to scoring rules.

    Attributes:
        TEXT_EQUALS: Normalized text equals ``value``.
        TEXT_CONTAINS: Normalized text contains ``value``.
        CLASS_CONTAINS: The element's own class attribute contains
            ``value`` (case-insensitive).
        ROLE_EQUALS: The explicit ``role`` attribute equals ``value``.
        ATTR_EQUALS: Attribute ``attribute`` equals ``value``.
        ATTR_CONTAINS: Attribute ``attribute`` contains ``value``.
        TAG_EQUALS: Tag name equals ``value``.
        MATCHED_SELECTOR: The element was produced by selector
            ``value``.
    """

    TEXT_EQUALS = "text_equals"
    TEXT_CONTAINS = "text_contains"
    CLASS_CONTAINS = "class_contains"
    ROLE_EQUALS = "role_equals"
    ATTR_EQUALS = "attr_equals"
    ATTR_CONTAINS = "attr_contains"
    TAG_EQUALS = "tag_equals"
    MATCHED_SELECTOR = "matched_selector"


@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned bounding rectangle in viewport coordinates.

    Attributes:
        x: Left edge x-coordinate.
        y: Top edge y-coordinate.
        width: Horizontal extent in CSS pixels (must be >= 0).
        height: Vertical extent in CSS pixels (must be >= 0).
    """

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        """Validate that width and height are non-negative."""
        if self.width < 0:
            raise ValueError(f"Rectangle width must be >= 0, got {self.width}")
        if self.height < 0:
            raise ValueError(f"Rectangle height must be >= 0, got {self.height}")

    def area(self) -> float:
        """Return the area of the rectangle in square pixels."""
        return self.width * self.height


@dataclass(frozen=True)
class ElementNode:
    """One captured on-page element.

    Attributes:
        node_id: Handle assigned by the page bridge.  Stable for the
            lifetime of the page context that produced the snapshot.
        order: Position in document order (0 = earliest).
        tag: Lower-case tag name.
        attributes: Raw attribute map (``class``, ``role``, ``type``...).
        text: Text content as rendered, untrimmed.
        value: Current form value for inputs, ``None`` otherwise.
        bounds: Client bounding box, or ``None`` when the element has
            no rendered box.
        rendered: Whether the element is attached to the rendering
            tree (has an offset parent or client rects).
        disabled: Native ``disabled`` state.
        busy: A busy/loading marker is present (``data-loading`` or
            ``aria-busy``).
        z_index: Computed stacking value; ``0`` for ``auto``.
        parent_id: ``node_id`` of the nearest captured ancestor, or
            ``None`` if no ancestor was captured.
        matched_selectors: Selectors from the request that produced
            this node.
    """

    node_id: int
    order: int
    tag: str
    attributes: dict[str, str] = field(default_factory=dict)
    text: str = ""
    value: str | None = None
    bounds: Rectangle | None = None
    rendered: bool = True
    disabled: bool = False
    busy: bool = False
    z_index: int = 0
    parent_id: int | None = None
    matched_selectors: tuple[str, ...] = ()

    @property
    def normalized_text(self) -> str:
        """Trimmed, lower-cased text content."""
        return " ".join(self.text.split()).lower()

    @property
    def class_name(self) -> str:
        """The element's own class attribute (empty if absent)."""
        return self.attributes.get("class", "")

    @property
    def is_visible(self) -> bool:
        """Whether the element has a rendered, non-empty box."""
        if not self.rendered or self.bounds is None:
            return False
        return self.bounds.area() > 0

    @property
    def is_enabled(self) -> bool:
        """Whether the element accepts interaction."""
        if self.disabled or self.busy:
            return False
        return self.attributes.get("aria-disabled", "").lower() != "true"


@dataclass(frozen=True)
class DocumentSnapshot:
    """All elements captured for one resolution pass.

    Attributes:
        url: Location of the document at capture time.
        nodes: Captured elements in document order.
        selector_matches: For every requested selector, the ids of the
            nodes it matched, in document order.
        timestamp: Unix timestamp of the capture.
    """

    url: str
    nodes: tuple[ElementNode, ...] = ()
    selector_matches: dict[str, tuple[int, ...]] = field(default_factory=dict)
    timestamp: float = 0.0

    def matches(self, selector: str) -> list[ElementNode]:
        """Return the nodes a selector matched, in document order."""
        by_id = {n.node_id: n for n in self.nodes}
        return [
            by_id[i] for i in self.selector_matches.get(selector, ())
            if i in by_id
        ]

    def is_descendant(self, node: ElementNode, ancestor_id: int) -> bool:
        """Check whether *node* lies inside the subtree of *ancestor_id*.

        Walks the ``parent_id`` chain of captured ancestors.  Every
        captured ancestor appears in that chain, so containment between
        two captured nodes is exact.
        """
        by_id = {n.node_id: n for n in self.nodes}
        current = node.parent_id
        seen: set[int] = set()
        while current is not None and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            parent = by_id.get(current)
            current = parent.parent_id if parent is not None else None
        return False


@dataclass(frozen=True)
class TextMatch:
    """Text gate applied after visibility/enabled filtering.

    Attributes:
        text: Target string; compared after trimming and lower-casing.
        mode: Exact or substring comparison.
    """

    text: str
    mode: TextMatchMode = TextMatchMode.EXACT


@dataclass(frozen=True)
class ScoreRule:
    """A single (predicate -> score delta) scoring rule.

    Attributes:
        predicate: What to test on the candidate.
        value: Comparison operand for the predicate.
        delta: Added to the candidate's score when the predicate holds.
        attribute: Attribute name for ``ATTR_*`` predicates.
    """

    predicate: RulePredicate
    value: str
    delta: float
    attribute: str = ""


@dataclass(frozen=True)
class TargetDescriptor:
    """Logical description of the element a command must act on.

    Pure value type, constructed fresh per command.

    Attributes:
        candidate_selectors: Ordered structural queries whose results
            are unioned into the candidate set.
        text_match: Optional text gate.
        require_visible: Drop candidates without a rendered box.
        require_enabled: Drop disabled, ``aria-disabled`` or busy
            candidates.
        score_rules: Rules applied in order; deltas are summed.
        disambiguation: Structural tie-break policy.
        container_selectors: Overlay/dialog containers considered by
            ``HIGHEST_LAYER_DEPTH``.
        description: Human-readable name used in messages and logs.
    """

    candidate_selectors: tuple[str, ...]
    text_match: TextMatch | None = None
    require_visible: bool = True
    require_enabled: bool = True
    score_rules: tuple[ScoreRule, ...] = ()
    disambiguation: Disambiguation = Disambiguation.NONE
    container_selectors: tuple[str, ...] = ()
    description: str = ""

    def all_selectors(self) -> tuple[str, ...]:
        """Return every selector the bridge must capture for this descriptor."""
        ordered: list[str] = []
        for sel in (*self.candidate_selectors, *self.container_selectors):
            if sel not in ordered:
                ordered.append(sel)
        return tuple(ordered)

    def label(self) -> str:
        """Human-readable label for messages."""
        if self.description:
            return self.description
        if self.text_match is not None:
            return repr(self.text_match.text)
        return ", ".join(self.candidate_selectors)


@dataclass(frozen=True)
class CandidateRejection:
    """Why a candidate did not win.

    Attributes:
        node_id: The rejected node.
        reason: Short machine-readable reason (``"not_visible"``,
            ``"disabled"``, ``"text_mismatch"``, ``"outside_top_layer"``,
            ``"excluded_kind"``, ``"out_of_range"``, ``"not_numeric"``,
            ``"lower_score"``, ``"not_selected"``).
        detail: Free-text explanation.
    """

    node_id: int
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class ResolutionResult:
    """All-or-nothing outcome of one resolution pass.

    Either ``node`` is set (with the winning ``score``) or the result is
    a not-found outcome carrying the full candidate list and per-candidate
    rejection reasons.

    Attributes:
        node: The winning element, or ``None`` when nothing qualified.
        score: Score of the winning element.
        candidates: Every enumerated candidate id, in document order.
        rejections: Rejection trail for every candidate that lost.
        scores: Final score per surviving candidate id.
    """

    node: ElementNode | None
    score: float = 0.0
    candidates: tuple[int, ...] = ()
    rejections: tuple[CandidateRejection, ...] = ()
    scores: dict[int, float] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        """Whether a single element was resolved."""
        return self.node is not None

    def summary(self) -> str:
        """One-line description for diagnostics."""
        if self.node is not None:
            return (
                f"resolved node {self.node.node_id} <{self.node.tag}> "
                f"score={self.score:g} of {len(self.candidates)} candidates"
            )
        reasons: dict[str, int] = {}
        for rej in self.rejections:
            reasons[rej.reason] = reasons.get(rej.reason, 0) + 1
        detail = ", ".join(f"{k}={v}" for k, v in sorted(reasons.items()))
        return (
            f"not found among {len(self.candidates)} candidates"
            + (f" ({detail})" if detail else "")
        )
