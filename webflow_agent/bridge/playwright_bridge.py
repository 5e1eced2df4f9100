"""Playwright implementation of the page-context bridge.

Each logical context id maps to one browser tab.  A ``PlaywrightPageContext``
is bound to exactly one *document*: when it is first used it stamps the
document with a random token, and every later call verifies that token.
A navigation replaces the document, the token disappears, and the
context raises ``PageUnreachableError`` just as an injected script would
lose its connection.  ``PlaywrightBridge.reestablish`` then binds a
fresh context to whatever document the tab now shows.

Element handles are ``data-webflow-id`` attributes assigned by the
snapshot script, so node ids stay valid for the lifetime of a document.

All browser calls run on one dedicated thread owned by the bridge,
because the sync API may only be driven from the thread that started it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from playwright.sync_api import Browser, BrowserContext, Page, Playwright
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from webflow_agent.bridge.interface import (
    PageBridge,
    PageContext,
    PageUnreachableError,
    StaleElementError,
)
from webflow_agent.config.settings import Settings
from webflow_agent.models.target import (
    DocumentSnapshot,
    ElementNode,
    Rectangle,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Playwright error fragments that mean the document or tab is gone.
_UNREACHABLE_MARKERS: tuple[str, ...] = (
    "execution context was destroyed",
    "target closed",
    "has been closed",
    "frame was detached",
    "navigating frame was detached",
    "cannot find context with specified id",
)

_BIND_SCRIPT = """
(token) => { window.__webflowDoc = token; return location.href; }
"""

_SNAPSHOT_SCRIPT = """
([selectors, token]) => {
  if (window.__webflowDoc !== token) return { detached: true };
  const state = window.__webflowState || (window.__webflowState = { next: 1 });
  const idOf = (el) => {
    if (!el.hasAttribute('data-webflow-id')) {
      el.setAttribute('data-webflow-id', String(state.next++));
    }
    return parseInt(el.getAttribute('data-webflow-id'), 10);
  };
  const matches = {};
  const elements = new Set();
  for (const sel of selectors) {
    let found = [];
    try { found = Array.from(document.querySelectorAll(sel)); } catch (e) { found = []; }
    matches[sel] = found;
    found.forEach((el) => elements.add(el));
  }
  const ordered = Array.from(elements).sort((a, b) =>
    a === b ? 0 : (a.compareDocumentPosition(b) & Node.DOCUMENT_POSITION_FOLLOWING ? -1 : 1));
  const captured = new Set(ordered);
  const nodes = ordered.map((el, order) => {
    let parent = el.parentElement;
    while (parent && !captured.has(parent)) parent = parent.parentElement;
    const style = getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    const attributes = {};
    for (const a of el.attributes) attributes[a.name] = a.value;
    const z = parseInt(style.zIndex, 10);
    const loading = el.getAttribute('data-loading');
    return {
      node_id: idOf(el),
      order,
      tag: el.tagName.toLowerCase(),
      attributes,
      text: el.textContent || '',
      value: ('value' in el && typeof el.value === 'string') ? el.value : null,
      bounds: (rect.width || rect.height)
        ? { x: rect.x, y: rect.y, width: rect.width, height: rect.height } : null,
      rendered: (el.offsetParent !== null || el.getClientRects().length > 0)
        && style.visibility !== 'hidden' && style.display !== 'none',
      disabled: !!el.disabled || style.pointerEvents === 'none',
      busy: (loading !== null && loading !== 'false') || el.getAttribute('aria-busy') === 'true',
      z_index: Number.isFinite(z) ? z : 0,
      parent_id: parent ? idOf(parent) : null,
      matched: selectors.filter((s) => matches[s].includes(el)),
    };
  });
  const selectorMatches = {};
  for (const sel of selectors) selectorMatches[sel] = matches[sel].map(idOf);
  return { url: location.href, nodes, matches: selectorMatches };
}
"""

_CLICK_SCRIPT = """
([id, token]) => {
  if (window.__webflowDoc !== token) return 'detached';
  const el = document.querySelector(`[data-webflow-id="${id}"]`);
  if (!el) return 'stale';
  el.scrollIntoView({ block: 'center' });
  const rect = el.getBoundingClientRect();
  const opts = {
    bubbles: true, cancelable: true, view: window, button: 0,
    clientX: rect.x + rect.width / 2, clientY: rect.y + rect.height / 2,
  };
  el.dispatchEvent(new PointerEvent('pointerdown', opts));
  el.dispatchEvent(new MouseEvent('mousedown', opts));
  el.dispatchEvent(new PointerEvent('pointerup', opts));
  el.dispatchEvent(new MouseEvent('mouseup', opts));
  el.dispatchEvent(new MouseEvent('click', opts));
  return 'ok';
}
"""

_SET_VALUE_SCRIPT = """
([id, token, value]) => {
  if (window.__webflowDoc !== token) return 'detached';
  const el = document.querySelector(`[data-webflow-id="${id}"]`);
  if (!el) return 'stale';
  const win = (el.ownerDocument && el.ownerDocument.defaultView) || window;
  const proto = el.tagName === 'TEXTAREA' ? win.HTMLTextAreaElement.prototype
    : el.tagName === 'SELECT' ? win.HTMLSelectElement.prototype
    : win.HTMLInputElement.prototype;
  const descriptor = Object.getOwnPropertyDescriptor(proto, 'value');
  if (!descriptor || !descriptor.set) return 'no-setter';
  el.focus();
  descriptor.set.call(el, value);
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return 'ok';
}
"""

_READ_VALUE_SCRIPT = """
([id, token]) => {
  if (window.__webflowDoc !== token) return { status: 'detached' };
  const el = document.querySelector(`[data-webflow-id="${id}"]`);
  if (!el) return { status: 'stale' };
  const value = ('value' in el && typeof el.value === 'string') ? el.value : (el.textContent || '');
  return { status: 'ok', value };
}
"""


def _is_unreachable(exc: PlaywrightError) -> bool:
    """Check whether a Playwright error means the document is gone."""
    message = str(exc).lower()
    return any(marker in message for marker in _UNREACHABLE_MARKERS)


class PlaywrightPageContext(PageContext):
    """A page context bound to one document of one Playwright tab.

    Every public method runs on the bridge's Playwright thread through
    *runner*.

    Args:
        context_id: Logical id within the bridge.
        page: The Playwright tab.
        runner: Executes a callable on the Playwright thread and returns
            its result.
    """

    def __init__(
        self,
        context_id: str,
        page: Page,
        runner: Callable[[Callable[[], Any]], Any],
    ) -> None:
        self._context_id = context_id
        self._page = page
        self._runner = runner
        self._token: str = ""

    @property
    def context_id(self) -> str:
        return self._context_id

    # -- document queries -----------------------------------------------------

    def url(self) -> str:
        return self._runner(self._url)

    def ready_state(self) -> str:
        return self._runner(
            lambda: self._call(
                lambda: str(self._page.evaluate("document.readyState"))
            )
        )

    def snapshot(self, selectors: tuple[str, ...]) -> DocumentSnapshot:
        return self._runner(lambda: self._snapshot(selectors))

    # -- actions --------------------------------------------------------------

    def click(self, node_id: int) -> None:
        self._runner(lambda: self._click(node_id))

    def set_value(self, node_id: int, value: str) -> None:
        self._runner(lambda: self._set_value(node_id, value))

    def read_value(self, node_id: int) -> str:
        return self._runner(lambda: self._read_value(node_id))

    # -- Playwright thread ----------------------------------------------------

    def _url(self) -> str:
        self._ensure_open()
        return self._page.url

    def _snapshot(self, selectors: tuple[str, ...]) -> DocumentSnapshot:
        token = self._bind()
        raw: dict[str, Any] = self._call(
            lambda: self._page.evaluate(
                _SNAPSHOT_SCRIPT, [list(selectors), token],
            )
        )
        if raw.get("detached"):
            raise PageUnreachableError(self._context_id, "document replaced")
        return _parse_snapshot(raw)

    def _click(self, node_id: int) -> None:
        token = self._bind()
        # Teardown while the script runs means the events went out.
        status = self._call(
            lambda: self._page.evaluate(_CLICK_SCRIPT, [node_id, token]),
            dispatching=True,
        )
        self._check_status(status, node_id)

    def _set_value(self, node_id: int, value: str) -> None:
        token = self._bind()
        status = self._call(
            lambda: self._page.evaluate(
                _SET_VALUE_SCRIPT, [node_id, token, value],
            ),
            dispatching=True,
        )
        if status == "no-setter":
            raise RuntimeError(
                f"element {node_id} has no native value setter"
            )
        self._check_status(status, node_id)

    def _read_value(self, node_id: int) -> str:
        token = self._bind()
        raw = self._call(
            lambda: self._page.evaluate(_READ_VALUE_SCRIPT, [node_id, token])
        )
        self._check_status(raw.get("status"), node_id)
        return str(raw.get("value", ""))

    def _bind(self) -> str:
        """Stamp the current document with this context's token once."""
        if not self._token:
            token = uuid.uuid4().hex
            self._call(lambda: self._page.evaluate(_BIND_SCRIPT, token))
            self._token = token
            logger.debug(
                "context %s bound to %s", self._context_id, self._page.url,
            )
        return self._token

    def _ensure_open(self) -> None:
        if self._page.is_closed():
            raise PageUnreachableError(self._context_id, "tab closed")

    def _call(self, fn: Callable[[], T], dispatching: bool = False) -> T:
        """Run a Playwright call, mapping teardown errors.

        Args:
            fn: The Playwright call.
            dispatching: Whether *fn* delivers a click or value write.
                Teardown raised from it is flagged ``action_dispatched``.
        """
        self._ensure_open()
        try:
            return fn()
        except PlaywrightError as exc:
            if _is_unreachable(exc):
                raise PageUnreachableError(
                    self._context_id,
                    str(exc).splitlines()[0],
                    action_dispatched=dispatching,
                ) from exc
            raise

    def _check_status(self, status: object, node_id: int) -> None:
        # "detached" is reported before any event is dispatched.
        if status == "detached":
            raise PageUnreachableError(self._context_id, "document replaced")
        if status == "stale":
            raise StaleElementError(node_id)


class PlaywrightBridge(PageBridge):
    """Browser-backed bridge: one Playwright tab per logical context id.

    Playwright's sync API is bound to the thread that started it.  The
    bridge therefore owns a single worker thread that starts the driver,
    performs every browser call and stops it again, so the bridge and its
    contexts may be used from any thread (for example a background run
    while the main thread answers status queries).

    Args:
        settings: Browser launch configuration and load timeouts.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._worker = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="playwright",
        )
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._pages: dict[str, Page] = {}
        self._contexts: dict[str, PlaywrightPageContext] = {}
        self._last_urls: dict[str, str] = {}
        try:
            self._run(self._launch)
        except Exception:
            self._worker.shutdown(wait=True)
            raise

    # -- PageBridge -----------------------------------------------------------

    def get_context(self, context_id: str) -> PageContext:
        return self._run(lambda: self._get_context(context_id))

    def reestablish(
        self,
        context_id: str,
        url: str | None = None,
    ) -> PageContext:
        return self._run(lambda: self._reestablish(context_id, url))

    def close(self) -> None:
        try:
            self._run(self._shutdown)
        finally:
            self._worker.shutdown(wait=True)

    # -- Playwright thread ----------------------------------------------------

    def _run(self, fn: Callable[[], T]) -> T:
        """Execute *fn* on the Playwright thread and return its result.

        Must not be called from a callable already running there.
        """
        return self._worker.submit(fn).result()

    def _launch(self) -> None:
        self._playwright = sync_playwright().start()
        launch_kwargs: dict[str, Any] = {
            "headless": self._settings.browser_headless,
        }
        if self._settings.browser_channel:
            launch_kwargs["channel"] = self._settings.browser_channel
        if self._settings.user_data_dir:
            self._context = self._playwright.chromium.launch_persistent_context(
                self._settings.user_data_dir, **launch_kwargs,
            )
        else:
            self._browser = self._playwright.chromium.launch(**launch_kwargs)
            self._context = self._browser.new_context()
        logger.info("browser started (headless=%s)",
                    self._settings.browser_headless)

    def _get_context(self, context_id: str) -> PageContext:
        ctx = self._contexts.get(context_id)
        page = self._pages.get(context_id)
        if ctx is None or page is None or page.is_closed():
            raise PageUnreachableError(context_id, "no live page context")
        self._last_urls[context_id] = page.url
        return ctx

    def _reestablish(self, context_id: str, url: str | None) -> PageContext:
        assert self._context is not None
        page = self._pages.get(context_id)
        if page is None or page.is_closed():
            page = self._context.new_page()
            self._pages[context_id] = page
            if url is None:
                url = self._last_urls.get(context_id)
        try:
            if url:
                logger.info("context %s: opening %s", context_id, url)
                page.goto(
                    url,
                    wait_until="commit",
                    timeout=self._settings.page_load_timeout_seconds * 1000,
                )
                self._last_urls[context_id] = url
        except PlaywrightError as exc:
            raise PageUnreachableError(context_id, str(exc)) from exc

        ctx = PlaywrightPageContext(context_id, page, self._run)
        self._contexts[context_id] = ctx
        return ctx

    def _shutdown(self) -> None:
        try:
            if self._context is not None:
                self._context.close()
            if self._browser is not None:
                self._browser.close()
        finally:
            if self._playwright is not None:
                self._playwright.stop()

    def __repr__(self) -> str:
        """Human-readable summary."""
        return f"PlaywrightBridge(contexts={sorted(self._contexts)})"


def _parse_snapshot(raw: dict[str, Any]) -> DocumentSnapshot:
    """Convert the snapshot script's output into model objects."""
    nodes: list[ElementNode] = []
    for item in raw.get("nodes", []):
        b = item.get("bounds")
        nodes.append(
            ElementNode(
                node_id=int(item["node_id"]),
                order=int(item["order"]),
                tag=str(item.get("tag", "")),
                attributes=dict(item.get("attributes") or {}),
                text=str(item.get("text", "")),
                value=item.get("value"),
                bounds=(
                    Rectangle(b["x"], b["y"], b["width"], b["height"])
                    if b else None
                ),
                rendered=bool(item.get("rendered", False)),
                disabled=bool(item.get("disabled", False)),
                busy=bool(item.get("busy", False)),
                z_index=int(item.get("z_index", 0)),
                parent_id=item.get("parent_id"),
                matched_selectors=tuple(item.get("matched", ())),
            )
        )
    matches = {
        sel: tuple(int(i) for i in ids)
        for sel, ids in (raw.get("matches") or {}).items()
    }
    return DocumentSnapshot(
        url=str(raw.get("url", "")),
        nodes=tuple(nodes),
        selector_matches=matches,
    )
