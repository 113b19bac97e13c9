"""
Page snapshots, selector strategies and candidate scoring.

Everything in this module is pure: a ``PageSnapshot`` is captured once from
the live page (see ``SNAPSHOT_SCRIPT``) and every decision below is made
against that value, so discovery can be tested against fixture snapshots
without a browser.

Discovery runs every strategy of a ``ControlSpec``, scores each candidate
(strategy weight + keyword weights + sibling form-control bonus + dialog
bonus - negative keywords) and keeps the best. Ties go to the candidate
discovered first. Anything under ``min_score`` counts as not found.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from core.models import PageKind, RouteKind

REF_ATTRIBUTE = "data-rr-idx"

# Markers searched for in the raw page HTML.
BLOCK_MARKERS = ("unusual traffic", "automated requests", "automated queries")
CAPTCHA_MARKERS = ("recaptcha", "captcha", "g-recaptcha")
PAGE_MARKERS = BLOCK_MARKERS + CAPTCHA_MARKERS

# Thresholds below which a page is considered not rendered yet.
MIN_ELEMENTS = 50
MIN_HTML_LENGTH = 5000
CHALLENGE_MAX_ELEMENTS = 20

ACKNOWLEDGEMENT_PHRASES = (
    "thanks for reporting",
    "thank you for reporting",
    "thanks for letting us know",
    "report received",
    "report submitted",
    "your report has been",
    "we'll review",
    "we will review",
    "thanks for your feedback",
)

# Report-form routes on the listing site.
REPORT_FORM_PATTERNS = (
    "/local/review/rap/report",
    "/maps/reviews/report",
    "/reportreview",
    "/report-review",
)
# Query keys that mean the reason (or submission) is already chosen.
SUBMIT_QUERY_KEYS = ("submit", "reason", "report_reason", "rt")


# Collects interactive elements, tags each with a stable ref attribute and
# reports which page markers occur in the raw HTML.
SNAPSHOT_SCRIPT = """
(args) => {
    const attr = args.attr;
    const markers = args.markers || [];
    window.__rrSeq = window.__rrSeq || 0;
    const primary = [
        'button', '[role="button"]', '[role="menuitem"]', '[role="menuitemradio"]',
        '[role="option"]', '[role="radio"]', 'input[type="radio"]', 'input[type="submit"]',
        'label', 'a[href]'
    ].join(', ');
    const formControls = 'input[type="radio"], [role="radio"], input[type="checkbox"], textarea';
    const dialogs = '[role="dialog"], [role="alertdialog"], [aria-modal="true"]';
    const seen = new Set();
    const elements = [];
    const ordered = [
        ...document.querySelectorAll(primary),
        ...document.querySelectorAll('div[jsaction], span')
    ];
    for (const el of ordered) {
        if (seen.has(el) || elements.length >= 1500) continue;
        seen.add(el);
        const text = (el.innerText || el.textContent || '').trim().substring(0, 200);
        const ariaLabel = el.getAttribute('aria-label') || '';
        const tag = el.tagName.toLowerCase();
        if ((tag === 'span' || tag === 'div') && !text && !ariaLabel) continue;
        if (!el.getAttribute(attr)) el.setAttribute(attr, String(window.__rrSeq++));
        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        const parent = el.parentElement;
        elements.push({
            ref: el.getAttribute(attr),
            tag: tag,
            text: text,
            aria_label: ariaLabel,
            role: el.getAttribute('role') || '',
            type: el.getAttribute('type') || '',
            aria_haspopup: el.getAttribute('aria-haspopup') || '',
            jsaction: (el.getAttribute('jsaction') || '').substring(0, 200),
            in_dialog: !!el.closest(dialogs),
            visible: rect.width > 0 && rect.height > 0 && style.visibility !== 'hidden' && style.display !== 'none',
            has_form_control_sibling: !!(parent && parent.querySelector(formControls)),
            checked: el.getAttribute('aria-checked') === 'true' || el.checked === true ||
                !!el.querySelector('input:checked, [aria-checked="true"]'),
            context_text: parent ? (parent.innerText || '').trim().substring(0, 200) : ''
        });
    }
    const html = document.documentElement ? document.documentElement.outerHTML : '';
    const lower = html.toLowerCase();
    return {
        url: window.location.href,
        title: document.title || '',
        html_length: html.length,
        total_elements: document.querySelectorAll('*').length,
        body_text: (document.body ? document.body.innerText : '').substring(0, 5000),
        markers_found: markers.filter(m => lower.includes(m)),
        has_dialog: !!document.querySelector(dialogs),
        elements: elements
    };
}
"""


@dataclass
class ElementSnapshot:
    """One interactive element as seen in a snapshot."""
    ref: str
    tag: str
    text: str = ""
    aria_label: str = ""
    role: str = ""
    type: str = ""
    aria_haspopup: str = ""
    jsaction: str = ""
    in_dialog: bool = False
    visible: bool = True
    has_form_control_sibling: bool = False
    checked: bool = False
    context_text: str = ""

    @property
    def label(self) -> str:
        """Lowercased text and aria-label, the haystack for keyword matching."""
        return f"{self.text} {self.aria_label}".strip().lower()

    @property
    def selector(self) -> str:
        return f'[{REF_ATTRIBUTE}="{self.ref}"]'

    @classmethod
    def from_dict(cls, data: Dict) -> "ElementSnapshot":
        return cls(
            ref=str(data.get("ref", "")),
            tag=(data.get("tag") or "").lower(),
            text=data.get("text") or "",
            aria_label=data.get("aria_label") or "",
            role=data.get("role") or "",
            type=(data.get("type") or "").lower(),
            aria_haspopup=data.get("aria_haspopup") or "",
            jsaction=data.get("jsaction") or "",
            in_dialog=bool(data.get("in_dialog")),
            visible=bool(data.get("visible", True)),
            has_form_control_sibling=bool(data.get("has_form_control_sibling")),
            checked=bool(data.get("checked")),
            context_text=data.get("context_text") or "",
        )


@dataclass
class PageSnapshot:
    """Point-in-time view of the page."""
    url: str = ""
    title: str = ""
    html_length: int = 0
    total_elements: int = 0
    body_text: str = ""
    markers_found: List[str] = field(default_factory=list)
    has_dialog: bool = False
    elements: List[ElementSnapshot] = field(default_factory=list)

    def find(self, ref: str) -> Optional[ElementSnapshot]:
        for element in self.elements:
            if element.ref == ref:
                return element
        return None

    @classmethod
    def from_dict(cls, data: Dict) -> "PageSnapshot":
        return cls(
            url=data.get("url") or "",
            title=data.get("title") or "",
            html_length=int(data.get("html_length") or 0),
            total_elements=int(data.get("total_elements") or 0),
            body_text=data.get("body_text") or "",
            markers_found=[m.lower() for m in data.get("markers_found") or []],
            has_dialog=bool(data.get("has_dialog")),
            elements=[ElementSnapshot.from_dict(e) for e in data.get("elements") or []],
        )


@dataclass
class Strategy:
    """A selector family: pulls candidate elements out of a snapshot."""
    name: str
    collect: Callable[[PageSnapshot], List[ElementSnapshot]]
    weight: float = 0.0


@dataclass
class ScoringProfile:
    positive: Dict[str, float] = field(default_factory=dict)
    negative: Dict[str, float] = field(default_factory=dict)
    form_control_bonus: float = 0.0
    dialog_bonus: float = 0.0
    min_score: float = 1.0


@dataclass
class ControlSpec:
    """A control to discover: ordered strategies plus how to score their candidates."""
    name: str
    strategies: List[Strategy]
    scoring: ScoringProfile


@dataclass
class Candidate:
    element: ElementSnapshot
    score: float
    strategy: str


# ============== Route / page / confirmation classification ==============

def classify_route(reference: str) -> RouteKind:
    """Decide how much UI a job needs from the shape of its reference."""
    parsed = urlparse((reference or "").strip())
    path = parsed.path.lower()
    if any(pattern in path for pattern in REPORT_FORM_PATTERNS):
        query = {key.lower() for key in parse_qs(parsed.query, keep_blank_values=True)}
        if query.intersection(SUBMIT_QUERY_KEYS):
            return RouteKind.SUBMIT_URL
        return RouteKind.REPORT_FORM_URL
    return RouteKind.CONTENT


def classify_page(snapshot: PageSnapshot) -> PageKind:
    markers = set(snapshot.markers_found)
    text = f"{snapshot.title} {snapshot.body_text}".lower()

    if markers.intersection(BLOCK_MARKERS) or any(m in text for m in BLOCK_MARKERS):
        return PageKind.BLOCKED
    # Captcha scripts ship on ordinary pages too; only a page that shows little else is a challenge.
    if markers.intersection(CAPTCHA_MARKERS) and (
        "not a robot" in text or len(snapshot.elements) < CHALLENGE_MAX_ELEMENTS
    ):
        return PageKind.CAPTCHA
    if snapshot.total_elements < MIN_ELEMENTS or snapshot.html_length < MIN_HTML_LENGTH:
        return PageKind.EMPTY
    return PageKind.READY


def _route_path(url: str) -> Tuple[str, str]:
    parsed = urlparse(url or "")
    return parsed.netloc.lower(), parsed.path.rstrip("/").lower()


def detect_confirmation(snapshot: PageSnapshot, action_url: str) -> Optional[str]:
    """Return the confirmation signal seen, or None."""
    text = snapshot.body_text.lower()
    for phrase in ACKNOWLEDGEMENT_PHRASES:
        if phrase in text:
            return f"acknowledgement:{phrase}"

    if snapshot.url and action_url and _route_path(snapshot.url) != _route_path(action_url):
        path = _route_path(snapshot.url)[1]
        if not any(pattern in path for pattern in REPORT_FORM_PATTERNS):
            return "url_changed"
    return None


# ============== Scoring ==============

def score_candidate(element: ElementSnapshot, strategy: Strategy, profile: ScoringProfile) -> float:
    label = element.label
    score = strategy.weight
    score += sum(weight for keyword, weight in profile.positive.items() if keyword in label)
    score -= sum(weight for keyword, weight in profile.negative.items() if keyword in label)
    if element.has_form_control_sibling:
        score += profile.form_control_bonus
    if element.in_dialog:
        score += profile.dialog_bonus
    return score


def rank(control: ControlSpec, snapshot: PageSnapshot) -> List[Candidate]:
    """All scored candidates in discovery order."""
    candidates = []
    for strategy in control.strategies:
        for element in strategy.collect(snapshot):
            if not element.visible:
                continue
            candidates.append(Candidate(element, score_candidate(element, strategy, control.scoring), strategy.name))
    return candidates


def discover(control: ControlSpec, snapshot: PageSnapshot) -> Optional[Candidate]:
    """Best-scoring candidate for ``control``, or None."""
    best: Optional[Candidate] = None
    for candidate in rank(control, snapshot):
        if best is None or candidate.score > best.score:
            best = candidate
    if best is None or best.score < control.scoring.min_score:
        return None
    return best


# ============== Selector families ==============

def _is_button(el: ElementSnapshot) -> bool:
    return el.tag == "button" or el.role == "button" or (el.tag == "input" and el.type == "submit")


def _aria_contains(*words: str) -> Callable[[PageSnapshot], List[ElementSnapshot]]:
    def collect(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [
            el for el in snapshot.elements
            if _is_button(el) and any(w in el.aria_label.lower() for w in words)
        ]
    return collect


def _haspopup_buttons(snapshot: PageSnapshot) -> List[ElementSnapshot]:
    return [el for el in snapshot.elements if _is_button(el) and el.aria_haspopup.lower() in ("menu", "true")]


def _jsaction_menu(snapshot: PageSnapshot) -> List[ElementSnapshot]:
    return [el for el in snapshot.elements if _is_button(el) and "menu" in el.jsaction.lower()]


def _menu_items_with(*words: str) -> Callable[[PageSnapshot], List[ElementSnapshot]]:
    def collect(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [
            el for el in snapshot.elements
            if el.role in ("menuitem", "menuitemradio", "option") and any(w in el.label for w in words)
        ]
    return collect


def _text_elements_with(*words: str) -> Callable[[PageSnapshot], List[ElementSnapshot]]:
    def collect(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [
            el for el in snapshot.elements
            if el.tag in ("div", "span", "a") and len(el.text) < 60 and any(w in el.label for w in words)
        ]
    return collect


def _buttons_with_text(*words: str) -> Callable[[PageSnapshot], List[ElementSnapshot]]:
    def collect(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [el for el in snapshot.elements if _is_button(el) and any(w in el.label for w in words)]
    return collect


def _submit_type(snapshot: PageSnapshot) -> List[ElementSnapshot]:
    return [el for el in snapshot.elements if el.type == "submit"]


# Words that mark a control as something other than the one we want.
UNRELATED_CONTROL_WORDS = {
    "zoom": 5.0,
    "share": 4.0,
    "directions": 4.0,
    "save": 3.0,
    "layers": 4.0,
    "street view": 4.0,
    "photo": 2.0,
    "sort": 3.0,
    "filter": 3.0,
    "search": 3.0,
    "close": 5.0,
    "cancel": 6.0,
    "back": 4.0,
}

MENU = ControlSpec(
    name="review menu",
    strategies=[
        Strategy("aria_more_options", _aria_contains("more", "menu", "options", "actions"), weight=2.0),
        Strategy("aria_haspopup_menu", _haspopup_buttons, weight=1.5),
        Strategy("jsaction_menu", _jsaction_menu, weight=1.0),
    ],
    scoring=ScoringProfile(
        positive={"more options": 2.0, "actions for": 3.0, "review": 2.0, "more": 1.0, "menu": 1.0},
        negative=UNRELATED_CONTROL_WORDS,
        dialog_bonus=0.0,
        min_score=2.0,
    ),
)

REPORT_OPTION = ControlSpec(
    name="report option",
    strategies=[
        Strategy("menuitem_report", _menu_items_with("report", "flag"), weight=3.0),
        Strategy("text_report", _text_elements_with("report", "flag"), weight=1.0),
    ],
    scoring=ScoringProfile(
        positive={"report review": 3.0, "report": 2.0, "flag as inappropriate": 3.0, "flag": 1.5},
        negative={"report a problem": 2.0, "cancel": 6.0, "close": 5.0, "share": 4.0},
        dialog_bonus=1.0,
        min_score=3.0,
    ),
)

SUBMIT = ControlSpec(
    name="submit button",
    strategies=[
        Strategy("button_submit_text", _buttons_with_text("submit", "send", "report", "flag"), weight=2.0),
        Strategy("aria_submit", _aria_contains("submit", "send"), weight=2.0),
        Strategy("type_submit", _submit_type, weight=1.5),
    ],
    scoring=ScoringProfile(
        positive={"submit": 3.0, "send": 2.0, "report": 1.0, "flag": 1.0},
        negative={"cancel": 10.0, "close": 10.0, "back": 8.0, "zoom": 5.0, "share": 4.0},
        dialog_bonus=2.0,
        min_score=3.0,
    ),
)


def reason_control(reason: str) -> ControlSpec:
    """Control spec for the report reason option matching ``reason``."""
    wanted = " ".join(reason.lower().split())

    def _clickable(el: ElementSnapshot) -> bool:
        return (
            el.tag == "label"
            or el.role in ("radio", "option", "menuitemradio")
            or bool(el.jsaction)
            or (el.tag == "input" and el.type == "radio")
        )

    def exact_text(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [el for el in snapshot.elements if _clickable(el) and " ".join(el.text.lower().split()) == wanted]

    def label_contains(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [el for el in snapshot.elements if el.tag == "label" and wanted in el.text.lower()]

    def radio_context(snapshot: PageSnapshot) -> List[ElementSnapshot]:
        return [
            el for el in snapshot.elements
            if (el.role == "radio" or el.type == "radio") and wanted in el.context_text.lower()
        ]

    return ControlSpec(
        name=f"reason '{reason}'",
        strategies=[
            Strategy("exact_text", exact_text, weight=4.0),
            Strategy("label_contains", label_contains, weight=2.5),
            Strategy("radio_sibling_text", radio_context, weight=2.0),
        ],
        scoring=ScoringProfile(
            positive={wanted: 1.0},
            negative={"cancel": 6.0, "close": 6.0},
            form_control_bonus=1.0,
            dialog_bonus=1.0,
            min_score=2.0,
        ),
    )


def report_dialog_ready(snapshot: PageSnapshot) -> bool:
    """
    True once a report dialog or form is on screen.

    A submit-like button only counts inside a dialog or on a report-form
    route; listing pages carry their own "Report" buttons.
    """
    if snapshot.has_dialog:
        return True
    submit = discover(SUBMIT, snapshot)
    if submit is None:
        return False
    return submit.element.in_dialog or classify_route(snapshot.url) != RouteKind.CONTENT
