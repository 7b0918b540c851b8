#!/usr/bin/env python3
import functools
import logging
import os
import re
import subprocess
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from typing import Callable, Dict, Iterable, List, Optional, Tuple


@functools.lru_cache(maxsize=1)
def _get_all_tmux_options() -> dict:
    """Batch read all tmux options in one subprocess call."""
    try:
        result = subprocess.run(
            ["tmux", "show-options", "-g"], capture_output=True, text=True, check=False
        )
        options = {}
        for line in result.stdout.strip().split("\n"):
            if " " in line:
                key, value = line.split(" ", 1)
                options[key] = value.strip('"')
        return options
    except Exception:
        return {}


def get_tmux_option(option: str, default: str) -> str:
    """Get tmux option value, falling back to default if not set."""
    return _get_all_tmux_options().get(option, default)


@dataclass
class Config:
    """Configuration for label allocation and match navigation."""

    label_atoms: str = field(
        default="asdghklqwertyuiopzxcvbnmfj", metadata={"opt": "@jumplabels-atoms"}
    )
    label_min_query_len: int = field(
        default=1, metadata={"opt": "@jumplabels-min-query-len"}
    )
    label_max_len: int = field(default=2, metadata={"opt": "@jumplabels-max-len"})
    label_hide_irrelevant: bool = field(
        default=True, metadata={"opt": "@jumplabels-hide-irrelevant"}
    )
    search_wrap_around: bool = field(
        default=True, metadata={"opt": "@jumplabels-wrap-around"}
    )
    search_exact: bool = field(default=True, metadata={"opt": "@jumplabels-exact"})
    case_sensitive: bool = field(
        default=False, metadata={"opt": "@jumplabels-case-sensitive"}
    )

    def __post_init__(self):
        if not self.label_atoms:
            raise ValueError("label_atoms must not be empty")
        if len(set(self.label_atoms)) != len(self.label_atoms):
            raise ValueError(f"label_atoms has duplicates: {self.label_atoms!r}")
        if self.label_max_len < 1:
            raise ValueError(f"label_max_len must be >= 1, got {self.label_max_len}")
        if self.label_min_query_len < 0:
            raise ValueError(
                f"label_min_query_len must be >= 0, got {self.label_min_query_len}"
            )

    @classmethod
    def from_options(cls, lookup: Callable[[str, str], str]) -> "Config":
        """Build a config from an option lookup taking (option, default_str)."""
        kwargs = {}
        for f in fields(cls):
            default_str = str(f.default).lower() if f.type is bool else str(f.default)
            raw = lookup(f.metadata["opt"], default_str)
            if f.type is bool:
                kwargs[f.name] = raw.lower() == "true"
            elif f.type is int:
                try:
                    kwargs[f.name] = int(raw)
                except ValueError:
                    raise ValueError(
                        f"{f.metadata['opt']} expects an integer, got {raw!r}"
                    ) from None
            else:
                kwargs[f.name] = raw
        return cls(**kwargs)

    @classmethod
    def from_tmux(cls) -> "Config":
        """Load configuration from tmux options."""
        return cls.from_options(get_tmux_option)


def setup_logging():
    """Initialize logging configuration based on tmux options"""
    debug = get_tmux_option("@jumplabels-debug", "false").lower() == "true"
    perf = get_tmux_option("@jumplabels-perf", "false").lower() == "true"

    if not (debug or perf):
        logging.getLogger().disabled = True
        return

    log_file = os.path.expanduser("~/jumplabels.log")
    logging.basicConfig(
        filename=log_file,
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def perf_timer(func_name=None):
    """Performance timing decorator that only logs when perf is enabled"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            perf = get_tmux_option("@jumplabels-perf", "false").lower() == "true"
            if not perf:
                return func(*args, **kwargs)

            name = func_name or func.__name__
            start_time = time.perf_counter()
            result = func(*args, **kwargs)
            end_time = time.perf_counter()

            logging.info(f"{name} took: {end_time - start_time:.3f} seconds")
            return result

        return wrapper

    return decorator


class LabelPoolError(AssertionError):
    """Raised when a label pool is used against its contract."""


# ============================================================================
# Data model
# ============================================================================


@dataclass(frozen=True)
class Match:
    """One occurrence of the query. Lines and columns are 1-based."""

    win_id: object
    line: int
    col: int
    length: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Bounds:
    top: int
    bottom: int


@dataclass(frozen=True)
class Position:
    line: int
    col: int


@dataclass(frozen=True)
class WindowMatches:
    """Matches found in one window together with its view state."""

    win_id: object
    bounds: Bounds
    cursor: Position
    matches: Tuple[Match, ...] = ()


@dataclass(frozen=True)
class MatchSet:
    count: int = 0
    windows: Tuple[WindowMatches, ...] = ()

    @classmethod
    def of(cls, windows: Iterable[WindowMatches]) -> "MatchSet":
        windows = tuple(windows)
        return cls(count=sum(len(w.matches) for w in windows), windows=windows)


class LabeledMatches:
    """Bidirectional label <-> match mapping, unique in both directions.

    Labels iterate in insertion order. Assigning a label that is already
    bound, or a match that already holds a label, drops the stale pairing so
    both directions stay consistent.
    """

    def __init__(self, initial: Optional[Dict[str, Match]] = None):
        self._matches: Dict[str, Match] = {}
        self._labels: Dict[Match, str] = {}
        for label, match in (initial or {}).items():
            self.set(label, match)

    def set(self, label: str, match: Match):
        old_match = self._matches.pop(label, None)
        if old_match is not None:
            del self._labels[old_match]
        old_label = self._labels.pop(match, None)
        if old_label is not None:
            del self._matches[old_label]
        self._matches[label] = match
        self._labels[match] = label

    def replace(self, old_label: str, new_label: str, match: Match):
        self.remove_key(old_label)
        self.set(new_label, match)

    def remove_key(self, label: str):
        match = self._matches.pop(label, None)
        if match is not None:
            del self._labels[match]

    def remove_value(self, match: Match):
        label = self._labels.pop(match, None)
        if label is not None:
            del self._matches[label]

    def key(self, match: Match) -> Optional[str]:
        return self._labels.get(match)

    def value(self, label: str) -> Optional[Match]:
        return self._matches.get(label)

    def has_key(self, label: str) -> bool:
        return label in self._matches

    def has_value(self, match: Match) -> bool:
        return match in self._labels

    def keys(self) -> List[str]:
        return list(self._matches)

    def pairs(self) -> List[Tuple[str, Match]]:
        # Snapshot, so callers may mutate while iterating
        return list(self._matches.items())

    def copy(self) -> "LabeledMatches":
        snapshot = LabeledMatches()
        snapshot._matches = dict(self._matches)
        snapshot._labels = dict(self._labels)
        return snapshot

    def __len__(self):
        return len(self._matches)

    def __contains__(self, label):
        return label in self._matches

    def __repr__(self):
        return f"LabeledMatches({self._matches!r})"


# ============================================================================
# Label pool
# ============================================================================


class LabelPool:
    """Lazily generated set of unambiguous labels.

    Discards are collected first. The first call to ``first`` or ``take``
    generates the labels once and freezes the pool; discarding afterwards
    raises LabelPoolError.

    Generation extends labels one atom at a time, shortest first, until
    ``min_count`` labels exist or nothing more can be generated. A label is
    never a prefix of another label in the pool, and never starts with a
    discarded string.
    """

    def __init__(self, atoms: Iterable[str], min_count: int, max_len: int):
        self.atoms = list(atoms)
        self.min_count = min_count
        self.max_len = max_len
        self._discarded = set()
        self._labels: Optional[deque] = None

    def available(self, label: str) -> bool:
        return not any(label.startswith(d) for d in self._discarded)

    def discard(self, label: str):
        if self._labels is not None:
            raise LabelPoolError("cannot discard labels after generation started")
        if not label:
            raise LabelPoolError(f"cannot discard empty label: {label!r}")
        self._discarded.add(label)

    def first(self) -> Optional[str]:
        labels = self._generated()
        return labels[0] if labels else None

    def take(self) -> Optional[str]:
        labels = self._generated()
        return labels.popleft() if labels else None

    def _generated(self) -> deque:
        if self._labels is None:
            self._labels = deque(self._generate())
            logging.debug(f"Generated labels: {list(self._labels)}")
        return self._labels

    def _generate(self) -> List[str]:
        # dict as an insertion-ordered set
        pool: Dict[str, None] = {}
        first_round = True

        while True:
            if first_round:
                tail = [atom for atom in self.atoms if self.available(atom)]
                first_round = False
            else:
                tail = []
                for label in pool:
                    for atom in self.atoms:
                        # a repeated trailing atom adds nothing
                        if label.endswith(atom):
                            continue
                        new_label = label + atom
                        if len(new_label) <= self.max_len and self.available(
                            new_label
                        ):
                            tail.append(new_label)

            if not tail:
                return list(pool)

            for label in tail:
                # the shorter prefix would be ambiguous with the new label
                pool.pop(label[:-1], None)
                pool[label] = None
                if len(pool) >= self.min_count:
                    return list(pool)


# ============================================================================
# Window collaborator
# ============================================================================


class Viewports(ABC):
    """Access to the windows being searched.

    Per-window reads go through the window made current by ``active``.
    """

    @abstractmethod
    def window_ids(self) -> List[object]:
        """Window ids in enumeration order"""
        pass

    @abstractmethod
    def activate(self, win_id) -> object:
        """Make a window current and return the previously current one"""
        pass

    @abstractmethod
    def bounds(self) -> Bounds:
        """Visible line range of the current window"""
        pass

    @abstractmethod
    def cursor(self) -> Position:
        """Cursor of the current window"""
        pass

    @abstractmethod
    def line_at(self, line: int) -> str:
        """Text of a 1-based line in the current window"""
        pass

    @contextmanager
    def active(self, win_id):
        previous = self.activate(win_id)
        try:
            yield self
        finally:
            self.activate(previous)

    def run_on(self, win_id, callback):
        with self.active(win_id):
            return callback()


class TextBuffer:
    __slots__ = ("lines", "top", "bottom", "cursor")

    def __init__(self, lines, top=1, bottom=None, cursor=None):
        self.lines = list(lines)
        self.top = top
        self.bottom = len(self.lines) if bottom is None else bottom
        self.cursor = cursor or Position(top, 1)


class TextViewports(Viewports):
    """In-memory windows over lists of lines"""

    def __init__(self, buffers: Optional[Dict[object, TextBuffer]] = None):
        self.buffers: Dict[object, TextBuffer] = dict(buffers or {})
        self.current = next(iter(self.buffers), None)

    def add(self, win_id, lines, top=1, bottom=None, cursor=None) -> TextBuffer:
        buf = TextBuffer(lines, top, bottom, cursor)
        self.buffers[win_id] = buf
        if self.current is None:
            self.current = win_id
        return buf

    def window_ids(self):
        return list(self.buffers)

    def activate(self, win_id):
        if win_id is not None and win_id not in self.buffers:
            raise KeyError(f"Unknown window: {win_id!r}")
        previous, self.current = self.current, win_id
        return previous

    def _buffer(self) -> TextBuffer:
        if self.current is None:
            raise LookupError("No active window")
        return self.buffers[self.current]

    def bounds(self):
        buf = self._buffer()
        return Bounds(buf.top, buf.bottom)

    def cursor(self):
        return self._buffer().cursor

    def line_at(self, line):
        lines = self._buffer().lines
        return lines[line - 1] if 1 <= line <= len(lines) else ""


# ============================================================================
# Search
# ============================================================================


def search_pattern(query: str, exact: bool = True, case_sensitive: bool = False):
    """Compile query into a regex; literal unless exact is False"""
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(re.escape(query) if exact else query, flags)


@perf_timer("Finding matches")
def find_matches(
    viewports: Viewports,
    query: str,
    exact: bool = True,
    case_sensitive: bool = False,
) -> MatchSet:
    """Find query occurrences in the visible lines of every window

    Args:
        viewports: Windows to search
        query: Text typed so far
        exact: Literal search when True, regular expression otherwise
        case_sensitive: Whether to match case-sensitively

    Returns:
        MatchSet with one entry per window, even when a window has no match
    """
    pattern = None
    if query:
        try:
            pattern = search_pattern(query, exact, case_sensitive)
        except re.error as e:
            logging.debug(f"Invalid pattern {query!r}: {e}")

    windows = []
    for win_id in viewports.window_ids():
        with viewports.active(win_id):
            bounds = viewports.bounds()
            matches = []
            if pattern is not None:
                for line_nr in range(bounds.top, bounds.bottom + 1):
                    line = viewports.line_at(line_nr)
                    for m in pattern.finditer(line):
                        # empty regex matches cannot be jumped to meaningfully
                        if m.end() == m.start():
                            continue
                        matches.append(
                            Match(win_id, line_nr, m.start() + 1, m.end() - m.start())
                        )
            windows.append(
                WindowMatches(win_id, bounds, viewports.cursor(), tuple(matches))
            )

    return MatchSet.of(windows)


# ============================================================================
# Label assignment
# ============================================================================


def sort_matches(matches: Iterable[Match], bounds: Bounds) -> List[Match]:
    """Sort matches by distance to the middle line, then line, then column"""
    middle_line = bounds.top + (bounds.bottom - bounds.top) // 2
    return sorted(
        matches, key=lambda m: (abs(m.line - middle_line), m.line, m.col)
    )


def discard_offscreen_labels(labeled_matches: LabeledMatches, win_id, bounds: Bounds):
    """Drop labels of this window's matches that scrolled out of view"""
    for _, match in labeled_matches.pairs():
        if match.win_id != win_id:
            continue
        if match.line < bounds.top or match.line > bounds.bottom:
            labeled_matches.remove_value(match)


def discard_conflicting_labels(
    labels_pool: LabelPool, matches: Iterable[Match], query: str, viewports: Viewports
):
    """Discard labels that may collide with the next query character"""
    for match in matches:
        line = viewports.line_at(match.line)
        pos = match.col - 1 + len(query)
        next_char = line[pos : pos + 1].lower()
        if next_char:
            labels_pool.discard(next_char)


def label_prev_matches(
    matches: Iterable[Match],
    labels_pool: LabelPool,
    prev_labeled_matches: LabeledMatches,
    labeled_matches: LabeledMatches,
):
    """Keep labels assigned by the previous query where still available"""
    for match in matches:
        label = prev_labeled_matches.key(match)
        if label is not None and labels_pool.available(label):
            labels_pool.discard(label)
            labeled_matches.set(label, match)


def label_matches(
    matches: Iterable[Match], labels_pool: LabelPool, labeled_matches: LabeledMatches
):
    """Take labels from the pool; existing labels are only ever shortened"""
    for match in matches:
        label = labels_pool.first()
        if label is None:
            return

        prev_label = labeled_matches.key(match)
        if prev_label is None:
            labeled_matches.set(labels_pool.take(), match)
        elif len(label) < len(prev_label):
            labeled_matches.replace(prev_label, labels_pool.take(), match)


def claim_labels(labels_pool: LabelPool, labeled_matches: LabeledMatches):
    """Keep labels already on screen out of the pool"""
    for label in labeled_matches.keys():
        if labels_pool.available(label):
            labels_pool.discard(label)


def discard_irrelevant_labels(labeled_matches: LabeledMatches, current_label: str):
    """Keep only labels starting with what was typed so far"""
    for label, _ in labeled_matches.pairs():
        if not label.startswith(current_label):
            labeled_matches.remove_key(label)


def is_incremental_edit(prev_query: Optional[str], query: str) -> bool:
    """True when one query extends the other"""
    if prev_query is None:
        return True
    return query.startswith(prev_query) or prev_query.startswith(query)


class LabelContext:
    """Label assignment state for one interactive jump session.

    Holds the current label <-> match assignment and, per query, a snapshot
    of the assignment it produced. The snapshot of the query one character
    shorter is used to keep labels stable while the user types.
    """

    def __init__(self, config: Config, viewports: Viewports):
        self.config = config
        self.viewports = viewports
        self.atoms = list(config.label_atoms)
        self.history: Dict[str, LabeledMatches] = {}
        self.prev_query: Optional[str] = None
        self._labeled_matches = LabeledMatches()

    def reset(self):
        self.history = {}
        self.prev_query = None
        self._labeled_matches = LabeledMatches()

    @perf_timer("Labeling matches")
    def label_matches(self, matches: MatchSet, query: str, label: str = ""):
        """Recompute labels for a new query.

        Args:
            matches: Search result for query
            query: Text typed so far
            label: Label characters typed after the query, if any
        """
        if len(query) < self.config.label_min_query_len:
            logging.debug(f"Query {query!r} too short to label")
            self.reset()
            return

        if not is_incremental_edit(self.prev_query, query):
            logging.debug(f"Query {self.prev_query!r} -> {query!r}, history cleared")
            self.history = {}
        self.prev_query = query

        seeded = self.history.get(query)
        labeled_matches = seeded.copy() if seeded is not None else LabeledMatches()

        prev = self.history.get(query[:-1])
        prev_labeled_matches = prev.copy() if prev is not None else LabeledMatches()

        labels_pool = LabelPool(self.atoms, matches.count, self.config.label_max_len)

        # offscreen discards only touch their own window's entries
        for win in matches.windows:
            discard_offscreen_labels(labeled_matches, win.win_id, win.bounds)
        claim_labels(labels_pool, labeled_matches)

        for win in matches.windows:
            with self.viewports.active(win.win_id):
                discard_conflicting_labels(
                    labels_pool, win.matches, query, self.viewports
                )
                label_prev_matches(
                    win.matches, labels_pool, prev_labeled_matches, labeled_matches
                )

        for win in matches.windows:
            with self.viewports.active(win.win_id):
                ordered = sort_matches(win.matches, win.bounds)
                label_matches(ordered, labels_pool, labeled_matches)

        self.history[query] = labeled_matches.copy()

        if self.config.label_hide_irrelevant and label:
            discard_irrelevant_labels(labeled_matches, label)

        self._labeled_matches = labeled_matches
        logging.debug(f"Query {query!r}: {len(labeled_matches)} labels")

    def labeled_matches(self) -> LabeledMatches:
        return self._labeled_matches

    def labels(self) -> List[str]:
        return self._labeled_matches.keys()

    def pairs(self) -> List[Tuple[str, Match]]:
        return self._labeled_matches.pairs()

    def has_label(self, label: str) -> bool:
        return self._labeled_matches.has_key(label)

    def match(self, label: str) -> Optional[Match]:
        return self._labeled_matches.value(label)

    def label_for(self, match: Match) -> Optional[str]:
        return self._labeled_matches.key(match)


# ============================================================================
# Navigation
# ============================================================================


class NavigationContext:
    """Cyclic current-match cursor over the matches of all searched windows.

    ``current_index`` is 1-based; 0 means nothing is selected, which only
    happens while there are no matches.
    """

    def __init__(self, config: Config, cursor: Position, excluded_win_ids=()):
        self.config = config
        self.cursor = cursor
        self.excluded_win_ids = set(excluded_win_ids)
        self.all_matches: List[Match] = []
        self.current_index = 0
        self.current_match: Optional[Match] = None

    def _set_current_index(self, idx: int):
        self.current_index = idx
        self.current_match = self.all_matches[idx - 1] if idx > 0 else None

    @perf_timer("Resetting navigation")
    def reset(self, matches: MatchSet):
        self.all_matches = []
        for win in matches.windows:
            if win.win_id in self.excluded_win_ids:
                continue
            self.all_matches.extend(sorted(win.matches, key=lambda m: (m.line, m.col)))

        # keep the current match if it survived
        if self.current_match is not None:
            for i, match in enumerate(self.all_matches, 1):
                if match == self.current_match:
                    self._set_current_index(i)
                    return

        # or take the first match after the cursor
        last_idx = 0
        for i, match in enumerate(self.all_matches, 1):
            if (
                match.line == self.cursor.line and match.col >= self.cursor.col
            ) or match.line > self.cursor.line:
                self._set_current_index(i)
                return
            last_idx = i

        # or the nearest one before it
        self._set_current_index(last_idx)

    def is_empty(self) -> bool:
        return not self.all_matches

    def best_match(self) -> Optional[Match]:
        return self.current_match if self.current_index else None

    def next_match(self):
        if self.current_index == 0:
            return
        if self.current_index >= len(self.all_matches):
            wrap_idx = 1 if self.config.search_wrap_around else len(self.all_matches)
            self._set_current_index(wrap_idx)
        else:
            self._set_current_index(self.current_index + 1)

    def prev_match(self):
        if self.current_index == 0:
            return
        if self.current_index <= 1:
            wrap_idx = len(self.all_matches) if self.config.search_wrap_around else 1
            self._set_current_index(wrap_idx)
        else:
            self._set_current_index(self.current_index - 1)


def start_session(
    viewports: Viewports, config: Optional[Config] = None, excluded_win_ids=()
):
    """Set up logging and build the label and navigation contexts for a jump.

    Reads the configuration from tmux unless one is given. The navigation
    cursor is the cursor of the currently active window.
    """
    config = config or Config.from_tmux()
    setup_logging()
    labels = LabelContext(config, viewports)
    navigation = NavigationContext(config, viewports.cursor(), excluded_win_ids)
    return labels, navigation
