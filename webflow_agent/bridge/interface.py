"""Abstract contracts for page contexts and the bridge that owns them.

A ``PageContext`` is the live execution environment of one displayed
document.  It is torn down by navigation; every method raises
``PageUnreachableError`` once that has happened.  The ``PageBridge``
keeps one page context per logical id and can re-materialize a fresh
context at the same location (or a new URL) after a teardown.

The factory function ``create_bridge()`` returns the Playwright-backed
implementation.  It is imported lazily so that the core and the test
suite do not require a browser.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from webflow_agent.config.settings import Settings
from webflow_agent.models.target import DocumentSnapshot


class PageUnreachableError(Exception):
    """The page context is gone (closed, navigated away, or crashed).

    Attributes:
        context_id: Logical id of the lost context.
        reason: Short cause reported by the bridge.
        action_dispatched: ``True`` when the context went away while a
            click or value write was being delivered, i.e. the action
            itself may have caused the navigation.  ``False`` when the
            context was already gone before anything was dispatched.
    """

    def __init__(
        self,
        context_id: str,
        reason: str = "",
        action_dispatched: bool = False,
    ) -> None:
        self.context_id = context_id
        self.reason = reason
        self.action_dispatched = action_dispatched
        message = f"page context {context_id!r} is unreachable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StaleElementError(Exception):
    """A node handle from an earlier snapshot is no longer in the document."""

    def __init__(self, node_id: int) -> None:
        self.node_id = node_id
        super().__init__(f"element {node_id} is no longer attached")


class PageContext(ABC):
    """Abstract interface for one live page context.

    Node ids passed to the action methods come from the most recent
    ``snapshot`` of the same context.
    """

    @property
    @abstractmethod
    def context_id(self) -> str:
        """Logical id of this context within its bridge."""

    # ------------------------------------------------------------------
    # Document queries
    # ------------------------------------------------------------------

    @abstractmethod
    def url(self) -> str:
        """Return the current document location."""

    @abstractmethod
    def ready_state(self) -> str:
        """Return the document ready state (``"loading"``,
        ``"interactive"`` or ``"complete"``)."""

    @abstractmethod
    def snapshot(self, selectors: tuple[str, ...]) -> DocumentSnapshot:
        """Capture every element matched by *selectors*.

        Args:
            selectors: Structural queries to evaluate.

        Returns:
            A ``DocumentSnapshot`` whose nodes carry the facts the
            resolver needs and whose ``selector_matches`` maps each
            selector to its node ids in document order.
        """

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @abstractmethod
    def click(self, node_id: int) -> None:
        """Dispatch a genuine interaction sequence on the node.

        Implementations must emit pointer-down/up, mouse-down/up and
        click events rather than invoking a handler directly.

        Raises:
            StaleElementError: If the node is no longer attached.
            PageUnreachableError: If the document is gone.  The error
                carries ``action_dispatched=True`` when the events were
                already delivered.
        """

    @abstractmethod
    def set_value(self, node_id: int, value: str) -> None:
        """Assign a form value through the native property setter.

        Implementations must bypass framework shadowing of ``value``
        and dispatch ``input`` and ``change`` events afterwards.

        Raises:
            StaleElementError: If the node is no longer attached.
            PageUnreachableError: As for ``click``.
        """

    @abstractmethod
    def read_value(self, node_id: int) -> str:
        """Return the node's form value, or its text for non-inputs.

        Raises:
            StaleElementError: If the node is no longer attached.
        """


class PageBridge(ABC):
    """Owns page contexts and re-materializes them after teardown."""

    @abstractmethod
    def get_context(self, context_id: str) -> PageContext:
        """Return the currently registered context for *context_id*.

        Raises:
            PageUnreachableError: If no live context is registered.
        """

    @abstractmethod
    def reestablish(
        self,
        context_id: str,
        url: str | None = None,
    ) -> PageContext:
        """Re-materialize a fresh context.

        Args:
            context_id: Logical id to (re)bind.
            url: Location to open.  ``None`` means the last known
                location of the torn-down context.

        Returns:
            The new context.  Its document may still be loading.

        Raises:
            PageUnreachableError: If the context cannot be created.
        """

    def close(self) -> None:
        """Release all resources held by the bridge."""


# ----------------------------------------------------------------------
# Factory
# ----------------------------------------------------------------------


def create_bridge(settings: Settings) -> PageBridge:
    """Return the browser-backed bridge.

    The Playwright module is imported lazily so that only callers that
    actually drive a browser need it installed.

    Args:
        settings: Browser launch configuration.

    Returns:
        A started ``PlaywrightBridge``.
    """
    from webflow_agent.bridge.playwright_bridge import PlaywrightBridge

    return PlaywrightBridge(settings)
