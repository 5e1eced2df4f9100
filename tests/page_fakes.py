"""In-memory page doubles shared by the test modules.

``FakePageContext`` implements ``PageContext`` over a list of
``ElementNode`` objects, records every action, and can be told to go
away mid-run.  ``FakeBridge`` implements ``PageBridge`` over a map of
URL -> document so that navigation and reconnection can be scripted
without a browser.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace

from webflow_agent.bridge.interface import (
    PageBridge,
    PageContext,
    PageUnreachableError,
    StaleElementError,
)
from webflow_agent.models.target import DocumentSnapshot, ElementNode, Rectangle

DEFAULT_URL = "https://app.example.com/pricing?listings=42"


def make_node(
    node_id: int,
    text: str = "",
    tag: str = "button",
    selectors: tuple[str, ...] = ("button",),
    value: str | None = None,
    attributes: dict[str, str] | None = None,
    z_index: int = 0,
    parent_id: int | None = None,
    rendered: bool = True,
    disabled: bool = False,
    busy: bool = False,
    order: int | None = None,
    width: float = 100.0,
) -> ElementNode:
    """Create an ElementNode with a visible 100x30 box by default."""
    return ElementNode(
        node_id=node_id,
        order=node_id if order is None else order,
        tag=tag,
        attributes=dict(attributes or {}),
        text=text,
        value=value,
        bounds=Rectangle(x=0, y=node_id * 40, width=width, height=30),
        rendered=rendered,
        disabled=disabled,
        busy=busy,
        z_index=z_index,
        parent_id=parent_id,
        matched_selectors=selectors,
    )


def make_snapshot(
    nodes: list[ElementNode],
    url: str = DEFAULT_URL,
) -> DocumentSnapshot:
    """Build a snapshot whose selector matches follow ``matched_selectors``."""
    ordered = sorted(nodes, key=lambda n: n.order)
    matches: dict[str, list[int]] = {}
    for node in ordered:
        for selector in node.matched_selectors:
            matches.setdefault(selector, []).append(node.node_id)
    return DocumentSnapshot(
        url=url,
        nodes=tuple(ordered),
        selector_matches={k: tuple(v) for k, v in matches.items()},
    )


class FakePageContext(PageContext):
    """Test double for a live page context.

    Attributes:
        nodes: The document, keyed by node id.
        clicks: Node ids clicked, in order.
        values_set: ``(node_id, value)`` pairs written, in order.
        snapshots: Number of snapshots taken.
        alive: When ``False`` every method raises ``PageUnreachableError``.
        ready_states: Ready states returned by successive
            ``ready_state`` calls; the last one repeats.
        on_click: Callbacks run when a node is clicked.  A
            ``PageUnreachableError`` raised by one is reported with
            ``action_dispatched=True``.
        snapshot_hook: Called with the snapshot count before every
            snapshot; may mutate ``nodes`` or raise.
    """

    def __init__(
        self,
        nodes: list[ElementNode] | None = None,
        url: str = DEFAULT_URL,
        context_id: str = "main",
    ) -> None:
        self.nodes: dict[int, ElementNode] = {
            n.node_id: n for n in (nodes or [])
        }
        self._url = url
        self._context_id = context_id
        self.clicks: list[int] = []
        self.values_set: list[tuple[int, str]] = []
        self.snapshots: int = 0
        self.alive: bool = True
        self.ready_states: list[str] = ["complete"]
        self.on_click: dict[int, Callable[[], None]] = {}
        self.snapshot_hook: Callable[[int], None] | None = None

    @property
    def context_id(self) -> str:
        return self._context_id

    def url(self) -> str:
        self._check()
        return self._url

    def ready_state(self) -> str:
        self._check()
        if len(self.ready_states) > 1:
            return self.ready_states.pop(0)
        return self.ready_states[0]

    def snapshot(self, selectors: tuple[str, ...]) -> DocumentSnapshot:
        self._check()
        self.snapshots += 1
        if self.snapshot_hook is not None:
            self.snapshot_hook(self.snapshots)
        wanted = [
            n for n in self.nodes.values()
            if any(s in selectors for s in n.matched_selectors)
        ]
        return make_snapshot(wanted, self._url)

    def click(self, node_id: int) -> None:
        self._check()
        if node_id not in self.nodes:
            raise StaleElementError(node_id)
        self.clicks.append(node_id)
        callback = self.on_click.get(node_id)
        if callback is None:
            return
        try:
            callback()
        except PageUnreachableError as exc:
            raise PageUnreachableError(
                exc.context_id, exc.reason, action_dispatched=True,
            ) from exc

    def set_value(self, node_id: int, value: str) -> None:
        self._check()
        if node_id not in self.nodes:
            raise StaleElementError(node_id)
        self.values_set.append((node_id, value))
        self.nodes[node_id] = replace(self.nodes[node_id], value=value)

    def read_value(self, node_id: int) -> str:
        self._check()
        node = self.nodes.get(node_id)
        if node is None:
            raise StaleElementError(node_id)
        return node.value if node.value is not None else node.text.strip()

    def _check(self) -> None:
        if not self.alive:
            raise PageUnreachableError(self._context_id, "document replaced")


class FakeBridge(PageBridge):
    """Test double for the page bridge.

    Documents are registered per URL.  ``navigate`` tears down the
    current context and records where the browser went, so that the next
    ``reestablish`` lands on the new document.

    Attributes:
        documents: URL -> node list used to build fresh contexts.
        contexts: Live contexts by logical id.
        reestablished: URLs passed to ``reestablish``, in order.
        fail_reestablish: Number of upcoming ``reestablish`` calls that
            raise ``PageUnreachableError``.
        closed: Whether ``close`` was called.
    """

    def __init__(
        self,
        documents: dict[str, list[ElementNode]] | None = None,
    ) -> None:
        self.documents: dict[str, list[ElementNode]] = dict(documents or {})
        self.contexts: dict[str, FakePageContext] = {}
        self.locations: dict[str, str] = {}
        self.reestablished: list[str | None] = []
        self.fail_reestablish: int = 0
        self.closed: bool = False
        self.context_factory: Callable[[str, str], FakePageContext] | None = None

    def open(self, url: str, context_id: str = "main") -> FakePageContext:
        """Register a live context on the document at *url*."""
        if self.context_factory is not None:
            context = self.context_factory(url, context_id)
        else:
            context = FakePageContext(
                list(self.documents.get(url, [])), url, context_id,
            )
        self.contexts[context_id] = context
        self.locations[context_id] = url
        return context

    def navigate(self, url: str, context_id: str = "main") -> None:
        """Simulate a navigation: the current context goes away."""
        current = self.contexts.pop(context_id, None)
        if current is not None:
            current.alive = False
        self.locations[context_id] = url

    def get_context(self, context_id: str) -> PageContext:
        context = self.contexts.get(context_id)
        if context is None or not context.alive:
            raise PageUnreachableError(context_id, "no live context")
        return context

    def reestablish(
        self,
        context_id: str,
        url: str | None = None,
    ) -> PageContext:
        self.reestablished.append(url)
        if self.fail_reestablish > 0:
            self.fail_reestablish -= 1
            raise PageUnreachableError(context_id, "browser gone")
        target = url or self.locations.get(context_id)
        if target is None:
            raise PageUnreachableError(context_id, "no known location")
        current = self.contexts.get(context_id)
        if current is not None:
            current.alive = False
        return self.open(target, context_id)

    def close(self) -> None:
        self.closed = True
        for context in self.contexts.values():
            context.alive = False
