"""
Report Interaction State Machine

Drives one job against the live page:

    classify route -> navigate -> classify page -> [menu -> report option]
        -> [reason] -> submit -> confirm

Each step is an ordered list of strategies. Mandatory steps raise a
``ReviewReportError`` subclass when their list is exhausted; the reason step
is optional and falls back to the dialog's default selection.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser.stealth_manager import human_like_delay
from core.error_handler import (
    ActionUnconfirmed,
    AntiBotChallenge,
    ControlNotFound,
    ErrorStep,
    NavigationFailure,
)
from core.models import Confidence, InteractionResult, PageKind, RouteKind
from core.retry import Backoff, poll_until, with_retry
from core.strategies import (
    MENU,
    PAGE_MARKERS,
    REF_ATTRIBUTE,
    REPORT_OPTION,
    SNAPSHOT_SCRIPT,
    SUBMIT,
    Candidate,
    ControlSpec,
    PageSnapshot,
    classify_page,
    classify_route,
    detect_confirmation,
    discover,
    reason_control,
    report_dialog_ready,
)

logger = logging.getLogger(__name__)

# Only these move navigation on to the next, more patient wait condition.
NAVIGATION_TIMEOUTS = (PlaywrightTimeoutError, asyncio.TimeoutError, TimeoutError)

# Dispatches a full pointer/mouse event sequence on the tagged element.
POINTER_DISPATCH_SCRIPT = """
(args) => {
    const el = document.querySelector(`[${args.attr}="${args.ref}"]`);
    if (!el) return false;
    const rect = el.getBoundingClientRect();
    const opts = {
        bubbles: true, cancelable: true, view: window,
        clientX: rect.left + rect.width / 2, clientY: rect.top + rect.height / 2
    };
    for (const type of ['pointerdown', 'mousedown', 'pointerup', 'mouseup', 'click']) {
        const Ctor = type.startsWith('pointer') ? PointerEvent : MouseEvent;
        el.dispatchEvent(new Ctor(type, opts));
    }
    return true;
}
"""


@dataclass
class NavigationStrategy:
    name: str
    wait_until: str
    timeout_ms: int


@dataclass
class InteractionConfig:
    """Timeouts (seconds unless noted) for the interaction steps."""
    navigation_strategies: List[NavigationStrategy] = field(default_factory=lambda: [
        NavigationStrategy("DOM content loaded", "domcontentloaded", 60000),
        NavigationStrategy("Page load", "load", 60000),
        NavigationStrategy("Network idle", "networkidle", 90000),
    ])
    navigation_backoff: Backoff = field(default_factory=lambda: Backoff(base_delay_seconds=2.0, max_delay_seconds=10.0))
    settle_timeout: float = 20.0
    settle_interval: float = 1.0
    discovery_timeout: float = 10.0
    click_verify_timeout: float = 8.0
    click_timeout_ms: int = 5000
    confirmation_timeout: float = 12.0
    poll_interval: float = 0.5
    # Pacing between actions (rate limiting only).
    action_delay: Tuple[float, float] = (0.5, 1.5)


Checkpoint = Callable[[], None]


def _no_checkpoint():
    return None


class ReportInteraction:
    """
    Executes one review report against ``page``.

    ``checkpoint`` is called between major steps and raises ``JobCancelled``
    when the worker is stopping. It is never called after the submit click.
    ``page`` may be replaced while running if the report form opens in a new
    tab; read it back after ``run`` for proof capture.
    """

    def __init__(self, page, config: Optional[InteractionConfig] = None,
                 checkpoint: Optional[Checkpoint] = None):
        self.page = page
        self.config = config or InteractionConfig()
        self.checkpoint = checkpoint or _no_checkpoint
        self.steps = {}

    # ------------------------------------------------------------------
    # Page access
    # ------------------------------------------------------------------

    async def snapshot(self) -> PageSnapshot:
        data = await self.page.evaluate(SNAPSHOT_SCRIPT, {"attr": REF_ATTRIBUTE, "markers": list(PAGE_MARKERS)})
        return PageSnapshot.from_dict(data or {})

    async def _pace(self):
        low, high = self.config.action_delay
        if high > 0:
            await human_like_delay(low, high)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def navigate(self, url: str) -> str:
        """Load ``url`` with increasingly patient wait conditions."""
        strategies = self.config.navigation_strategies

        async def attempt(n: int) -> str:
            strategy = strategies[n - 1]
            logger.info(f"Navigating with strategy '{strategy.name}' (timeout {strategy.timeout_ms}ms)")
            try:
                await self.page.goto(url, wait_until=strategy.wait_until, timeout=strategy.timeout_ms)
            except NAVIGATION_TIMEOUTS as e:
                raise NavigationFailure(f"{strategy.name} timed out: {e}", retryable=True) from e
            except Exception as e:
                # DNS and proxy errors fail navigation at once.
                raise NavigationFailure(f"{strategy.name} failed: {e}", retryable=False) from e
            return strategy.name

        name = await with_retry(
            attempt,
            attempts=len(strategies),
            backoff=self.config.navigation_backoff,
            label="navigation",
        )
        self.steps["navigation"] = name
        return name

    async def wait_until_ready(self) -> PageSnapshot:
        """Poll until the page is no longer empty; raise on block or CAPTCHA pages."""
        last: List[PageSnapshot] = []

        async def settled():
            snap = await self.snapshot()
            last[:] = [snap]
            kind = classify_page(snap)
            return (snap, kind) if kind != PageKind.EMPTY else None

        result = await poll_until(settled, timeout=self.config.settle_timeout, interval=self.config.settle_interval)
        if result is None:
            snap = last[0] if last else PageSnapshot()
            raise NavigationFailure(
                f"Page never rendered ({snap.total_elements} elements, {snap.html_length} chars)",
                step=ErrorStep.CLASSIFICATION,
                retryable=False,
            )

        snap, kind = result
        if kind in (PageKind.BLOCKED, PageKind.CAPTCHA):
            raise AntiBotChallenge(kind.value, snap.url)
        self.steps["page"] = kind.value
        return snap

    async def find(self, control: ControlSpec, required: bool = True) -> Optional[Candidate]:
        """Poll snapshots until ``control`` is discovered or the discovery timeout ends."""

        async def probe():
            return discover(control, await self.snapshot())

        candidate = await poll_until(probe, timeout=self.config.discovery_timeout, interval=self.config.poll_interval)
        if candidate is None:
            if required:
                raise ControlNotFound(control.name)
            return None
        logger.info(
            f"Found {control.name} via {candidate.strategy} "
            f"(score {candidate.score:.1f}): {candidate.element.label[:80]!r}"
        )
        return candidate

    async def click_with_fallback(
        self,
        candidate: Candidate,
        verify: Callable[[], Awaitable[Any]],
        control: str,
        single_dispatch: bool = False,
    ) -> str:
        """
        Click through direct, programmatic and pointer-event dispatch in turn.

        After each dispatch ``verify`` is polled; the first mechanism whose
        expected UI state appears wins. Raises ``ControlNotFound`` when none do.

        With ``single_dispatch`` the next mechanism is only tried when the
        previous one raised: the first dispatch that goes through is final
        even if ``verify`` never passes.
        """
        selector = candidate.element.selector
        locator = self.page.locator(selector).first

        async def direct():
            await locator.click(timeout=self.config.click_timeout_ms)

        async def programmatic():
            await locator.evaluate("el => el.click()")

        async def pointer():
            dispatched = await self.page.evaluate(
                POINTER_DISPATCH_SCRIPT, {"attr": REF_ATTRIBUTE, "ref": candidate.element.ref}
            )
            if not dispatched:
                raise ControlNotFound(control, f"{control} left the page before pointer dispatch")

        for name, dispatch in (("direct", direct), ("programmatic", programmatic), ("pointer", pointer)):
            try:
                await dispatch()
            except Exception as e:
                logger.warning(f"{name} click on {control} failed: {e}")
                continue

            if await poll_until(verify, timeout=self.config.click_verify_timeout, interval=self.config.poll_interval):
                logger.info(f"Clicked {control} ({name})")
                self.steps[control] = name
                return name
            if single_dispatch:
                logger.warning(f"{name} click on {control} had no visible effect, not dispatching again")
                self.steps[control] = name
                return name
            logger.warning(f"{name} click on {control} had no visible effect")

        raise ControlNotFound(control, f"No click on {control} produced the expected state")

    async def open_report_dialog(self):
        """Menu discovery path: open the review menu, then choose the report option."""
        menu = await self.find(MENU)

        async def menu_open():
            return discover(REPORT_OPTION, await self.snapshot()) is not None

        await self.click_with_fallback(menu, menu_open, "review menu")
        await self._pace()
        self.checkpoint()

        option = await self.find(REPORT_OPTION)
        pages_before = self._open_pages()

        async def dialog_open():
            if self._switch_to_new_page(pages_before):
                return True
            return report_dialog_ready(await self.snapshot())

        await self.click_with_fallback(option, dialog_open, "report option")
        if self._open_pages() > pages_before:
            await self.wait_until_ready()
        await self._pace()

    def _open_pages(self) -> int:
        try:
            return len(self.page.context.pages)
        except Exception:
            return 0

    def _switch_to_new_page(self, pages_before: int) -> bool:
        """Adopt a tab the report option opened. Returns True if one appeared."""
        try:
            pages = self.page.context.pages
        except Exception:
            return False
        if len(pages) > pages_before:
            newest = pages[-1]
            if newest is not self.page:
                logger.info("Report form opened in a new tab")
                self.page = newest
            return True
        return False

    async def select_reason(self, reason: str) -> bool:
        """Choose the reason option. Optional: returns False and keeps the default if it is missing."""
        control = reason_control(reason)
        candidate = await self.find(control, required=False)
        if candidate is None:
            logger.warning(f"Could not find reason '{reason}', submitting with default selection")
            return False

        async def selected():
            snap = await self.snapshot()
            element = snap.find(candidate.element.ref)
            if element is not None and element.checked:
                return True
            chosen = discover(control, snap)
            return chosen is not None and chosen.element.checked

        try:
            await self.click_with_fallback(candidate, selected, "reason option")
        except ControlNotFound:
            logger.warning(f"Reason '{reason}' did not register, submitting with default selection")
            return False
        await self._pace()
        return True

    async def submit(self, action_url: str) -> str:
        """
        Click submit once. The expected state is the button leaving or a
        confirmation showing; a dispatch without it is left to ``confirm``.
        """
        candidate = await self.find(SUBMIT)

        async def submitted():
            snap = await self.snapshot()
            if detect_confirmation(snap, action_url):
                return True
            element = snap.find(candidate.element.ref)
            return element is None or not element.visible

        return await self.click_with_fallback(candidate, submitted, "submit button", single_dispatch=True)

    async def confirm(self, action_url: str) -> Tuple[Confidence, Optional[str]]:
        """Poll for an acknowledgement. Absence is an unconfirmed success, never a failure."""

        async def signal():
            return detect_confirmation(await self.snapshot(), action_url)

        found = await poll_until(signal, timeout=self.config.confirmation_timeout, interval=self.config.poll_interval)
        if found:
            logger.info(f"Report confirmed ({found})")
            return Confidence.CONFIRMED, found

        unconfirmed = ActionUnconfirmed("Report dispatched but no confirmation signal appeared")
        logger.warning(str(unconfirmed))
        return Confidence.UNCONFIRMED, None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run(self, reference: str, reason: Optional[str] = None) -> InteractionResult:
        route = classify_route(reference)
        logger.info(f"Route classified as {route.value}: {reference}")
        self.steps["route"] = route.value

        self.checkpoint()
        await self.navigate(reference)
        self.checkpoint()
        await self.wait_until_ready()
        self.checkpoint()

        if route == RouteKind.CONTENT:
            await self.open_report_dialog()
            self.checkpoint()

        reason_selected = False
        if reason and route != RouteKind.SUBMIT_URL:
            reason_selected = await self.select_reason(reason)
            self.checkpoint()

        action_url = self.page.url
        await self.submit(action_url)
        # No checkpoint from here on: the report may already be filed.
        confidence, signal = await self.confirm(action_url)

        return InteractionResult(
            method=route,
            confidence=confidence,
            final_url=self.page.url,
            confirmation_signal=signal,
            reason_selected=reason_selected,
            steps=dict(self.steps),
        )
