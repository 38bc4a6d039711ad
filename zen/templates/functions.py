"""
The fixed function library available to every template.

Functions take their subject first so they work both as globals
(``{{ truncate(TASK_TITLE, 20) }}``) and as filters
(``{{ TASK_TITLE | truncate(20) }}``). Time and randomness come from an
injectable clock and entropy source so renders can be made deterministic.
"""

import math
import os
import re
import secrets
import textwrap
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from typing import Any

from jinja2 import Undefined

import zen

DATE_LAYOUT = "%Y-%m-%d"
DATETIME_LAYOUT = "%Y-%m-%d %H:%M:%S"

ZENFLOW_STAGES = (
    ("01-align", "Align"),
    ("02-discover", "Discover"),
    ("03-prioritize", "Prioritize"),
    ("04-design", "Design"),
    ("05-build", "Build"),
    ("06-ship", "Ship"),
    ("07-learn", "Learn"),
)
_STAGE_IDS = [stage_id for stage_id, _ in ZENFLOW_STAGES]
_STAGE_NAMES = dict(ZENFLOW_STAGES)

# Task sub-directory that artifacts for a stage are written into
STAGE_DIRECTORIES = {
    "02-discover": "research",
    "04-design": "design",
    "05-build": "execution",
    "06-ship": "execution",
    "07-learn": "outcomes",
}

# Names that only make sense as globals; everything else is also a filter
GLOBAL_ONLY = frozenset({"now", "today", "tomorrow", "zenflowStages", "list", "dict", "zenVersion", "zenWorkspace"})

# Go reference-time layout tokens, longest first so "2006" wins over "06"
_GO_LAYOUT_TOKENS = {
    "January": "%B",
    "Monday": "%A",
    "-07:00": "%z",
    "-0700": "%z",
    "2006": "%Y",
    "Jan": "%b",
    "Mon": "%a",
    "MST": "%Z",
    "01": "%m",
    "02": "%d",
    "03": "%I",
    "04": "%M",
    "05": "%S",
    "06": "%y",
    "15": "%H",
    "PM": "%p",
}
_GO_LAYOUT = re.compile("|".join(re.escape(token) for token in _GO_LAYOUT_TOKENS))
_LEADING_INT = re.compile(r"^\s*[-+]?\d+")
_LEADING_FLOAT = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def to_strftime(layout: str) -> str:
    """Translate a Go-style layout (``2006-01-02``) to strftime; strftime input passes through."""
    if "%" in layout:
        return layout
    return _GO_LAYOUT.sub(lambda match: _GO_LAYOUT_TOKENS[match.group(0)], layout)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or isinstance(value, Undefined)


def _parse_day(value: str) -> date | None:
    try:
        return datetime.strptime(value, DATE_LAYOUT).date()
    except (TypeError, ValueError):
        return None


def _words(value: str, separators: str) -> list[str]:
    return [word for word in re.split(f"[{re.escape(separators)}]+", value) if word]


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _LEADING_FLOAT.match(value)
        if match:
            return float(match.group(0))
    return 0.0


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def title_case(value: str) -> str:
    words = str(value).lower().split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def camel_case(value: str) -> str:
    words = _words(str(value), " _-")
    if not words:
        return str(value)
    return words[0].lower() + "".join(word[:1].upper() + word[1:].lower() for word in words[1:])


def pascal_case(value: str) -> str:
    return "".join(word[:1].upper() + word[1:].lower() for word in _words(str(value), " _-"))


def snake_case(value: str) -> str:
    return "_".join(_words(str(value), " -")).lower()


def kebab_case(value: str) -> str:
    return "-".join(_words(str(value), " _")).lower()


def slugify(value: str) -> str:
    return _NON_ALNUM.sub("-", str(value).lower()).strip("-")


def indent(value: str, spaces: int) -> str:
    """Indent non-blank lines by ``spaces``."""
    if spaces <= 0:
        return value
    prefix = " " * spaces
    return "\n".join(prefix + line if line.strip() else line for line in str(value).split("\n"))


def dedent(value: str) -> str:
    return textwrap.dedent(str(value).expandtabs(4))


def wrap(value: str, width: int) -> str:
    if width <= 0:
        return value
    words = str(value).split()
    if not words:
        return value
    lines: list[str] = []
    current = ""
    for word in words:
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= width:
            current += " " + word
        else:
            lines.append(current)
            current = word
    lines.append(current)
    return "\n".join(lines)


def truncate(value: str, length: int) -> str:
    value = str(value)
    if len(value) <= length:
        return value
    if length <= 3:
        return value[: max(length, 0)]
    return value[: length - 3] + "..."


def pad(value: str, length: int, pad_with: str = " ") -> str:
    """Right-pad ``value`` to ``length`` by repeating ``pad_with``."""
    value = str(value)
    if len(value) >= length:
        return value
    pad_with = pad_with or " "
    needed = length - len(value)
    return value + (pad_with * math.ceil(needed / len(pad_with)))[:needed]


def repeat(value: str, count: int) -> str:
    return str(value) * max(count, 0)


def quote(value: Any) -> str:
    text = "" if _is_empty(value) else str(value)
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def squote(value: Any) -> str:
    return "'" + ("" if _is_empty(value) else str(value)) + "'"


# ---------------------------------------------------------------------------
# Collections and comparisons
# ---------------------------------------------------------------------------


def join(items: Iterable[Any], separator: str = "") -> str:
    if isinstance(items, str):
        return items
    return separator.join(str(item) for item in items)


def split(value: str, separator: str) -> list[str]:
    return str(value).split(separator)


def first(items: Any) -> Any:
    try:
        return items[0]
    except (IndexError, KeyError, TypeError):
        return None


def last(items: Any) -> Any:
    try:
        return items[-1]
    except (IndexError, KeyError, TypeError):
        return None


def length(value: Any) -> int:
    if _is_empty(value):
        return 0
    try:
        return len(value)
    except TypeError:
        return 0


def make_list(*items: Any) -> list[Any]:
    return list(items)


def make_dict(*pairs: Any) -> dict[str, Any]:
    """``dict("a", 1, "b", 2)`` builds ``{"a": 1, "b": 2}``; an odd trailing key maps to ``""``."""
    result: dict[str, Any] = {}
    for position in range(0, len(pairs), 2):
        key = str(pairs[position])
        result[key] = pairs[position + 1] if position + 1 < len(pairs) else ""
    return result


def empty(value: Any) -> bool:
    if _is_empty(value):
        return True
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return value is False or value == 0


def default(value: Any, fallback: Any) -> Any:
    return fallback if _is_empty(value) else value


def coalesce(*values: Any) -> Any:
    for value in values:
        if not _is_empty(value):
            return value
    return None


def ternary(condition: Any, when_true: Any, when_false: Any) -> Any:
    return when_true if condition else when_false


# ---------------------------------------------------------------------------
# Arithmetic and conversion
# ---------------------------------------------------------------------------


def add(a: Any, b: Any) -> float:
    return _number(a) + _number(b)


def sub(a: Any, b: Any) -> float:
    return _number(a) - _number(b)


def mul(a: Any, b: Any) -> float:
    return _number(a) * _number(b)


def div(a: Any, b: Any) -> float:
    divisor = _number(b)
    if divisor == 0:
        return 0.0
    return _number(a) / divisor


def mod(a: Any, b: Any) -> int | float:
    if isinstance(a, int) and isinstance(b, int) and not isinstance(a, bool) and not isinstance(b, bool):
        return a % b if b != 0 else 0
    divisor = _number(b)
    if divisor == 0:
        return 0.0
    return math.fmod(_number(a), divisor)


def to_int(value: Any) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        if match:
            return int(match.group(0))
    return 0


def to_float(value: Any) -> float:
    return _number(value)


def to_string(value: Any) -> str:
    if _is_empty(value):
        return ""
    return str(value)


# ---------------------------------------------------------------------------
# Workflow stages
# ---------------------------------------------------------------------------


def zenflow_stages() -> list[dict[str, Any]]:
    return [{"number": n, "id": stage_id, "name": name} for n, (stage_id, name) in enumerate(ZENFLOW_STAGES, 1)]


def stage_number(stage_id: str) -> int:
    try:
        return _STAGE_IDS.index(stage_id) + 1
    except ValueError:
        return 0


def stage_name(stage_id: str) -> str:
    return _STAGE_NAMES.get(stage_id, stage_id)


def next_stage(stage_id: str) -> str:
    number = stage_number(stage_id)
    if number == 0 or number == len(_STAGE_IDS):
        return stage_id
    return _STAGE_IDS[number]


def prev_stage(stage_id: str) -> str:
    number = stage_number(stage_id)
    if number <= 1:
        return stage_id
    return _STAGE_IDS[number - 2]


def is_stage_completed(stage_id: str, completed: Iterable[str] | None) -> bool:
    return stage_id in set(completed or ())


def stage_directory(stage_id: str) -> str:
    """Task sub-directory for a stage; ``""`` means the task root."""
    return STAGE_DIRECTORIES.get(stage_id, "")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def join_path(*parts: str) -> str:
    parts = tuple(str(part) for part in parts if part)
    if not parts:
        return ""
    return os.path.normpath(os.path.join(*parts))


def file_name(path: str) -> str:
    return os.path.basename(str(path).rstrip("/")) or str(path)


def file_ext(path: str) -> str:
    return os.path.splitext(str(path))[1]


def dir_name(path: str) -> str:
    return os.path.dirname(str(path).rstrip("/")) or "."


class TemplateFunctions:
    """Binds the library to a clock, an entropy source and a workspace root."""

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        entropy: Callable[[int], bytes] | None = None,
        workspace_root: str = ".",
    ) -> None:
        self._clock = clock or datetime.now
        self._entropy = entropy or secrets.token_bytes
        self.workspace_root = workspace_root

    # Identifiers ------------------------------------------------------------

    def _hex(self, digits: int) -> str:
        return self._entropy((digits + 1) // 2).hex().upper()[:digits]

    def task_id(self, prefix: str) -> str:
        return f"{prefix}-{self._clock().strftime('%Y%m%d')}-{self._hex(4)}"

    def task_id_short(self, prefix: str) -> str:
        return f"{prefix}-{self._hex(4)}"

    def random_id(self, length: int = 8) -> str:
        return self._hex(length if length > 0 else 8)

    # Time -------------------------------------------------------------------

    def now(self) -> str:
        return self._clock().strftime(DATETIME_LAYOUT)

    def today(self) -> str:
        return self._clock().strftime(DATE_LAYOUT)

    def tomorrow(self) -> str:
        return (self._clock() + timedelta(days=1)).strftime(DATE_LAYOUT)

    @staticmethod
    def format_date(value: Any, layout: str = DATE_LAYOUT) -> str:
        """Format a date, datetime or ``YYYY-MM-DD`` string; unparseable strings come back unchanged."""
        if isinstance(value, (datetime, date)):
            return value.strftime(to_strftime(layout))
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return value
            return parsed.strftime(to_strftime(layout))
        return to_string(value)

    @staticmethod
    def parse_date(value: str, layout: str = DATE_LAYOUT) -> datetime | None:
        try:
            return datetime.strptime(str(value), to_strftime(layout))
        except ValueError:
            return None

    @staticmethod
    def add_days(value: str, days: int) -> str:
        parsed = _parse_day(value)
        if parsed is None:
            return value
        return (parsed + timedelta(days=days)).strftime(DATE_LAYOUT)

    @staticmethod
    def working_days(start: str, end: str) -> int:
        """Weekdays between ``start`` and ``end``, both ends included."""
        first_day, last_day = _parse_day(start), _parse_day(end)
        if first_day is None or last_day is None:
            return 0
        count = 0
        day = first_day
        while day <= last_day:
            if day.weekday() < 5:
                count += 1
            day += timedelta(days=1)
        return count

    # Workspace --------------------------------------------------------------

    def workspace_path(self, path: str) -> str:
        return os.path.join(self.workspace_root, str(path))

    def relative_path(self, path: str) -> str:
        if not self.workspace_root:
            return path
        try:
            return os.path.relpath(str(path), self.workspace_root)
        except ValueError:
            return path

    def as_dict(self) -> dict[str, Callable[..., Any]]:
        """Every function under its template name."""
        return {
            # text
            "upper": lambda value: str(value).upper(),
            "lower": lambda value: str(value).lower(),
            "trim": lambda value: str(value).strip(),
            "trimLeft": lambda value, cutset=None: str(value).lstrip(cutset),
            "trimRight": lambda value, cutset=None: str(value).rstrip(cutset),
            "titleCase": title_case,
            "camelCase": camel_case,
            "pascalCase": pascal_case,
            "snakeCase": snake_case,
            "kebabCase": kebab_case,
            "slugify": slugify,
            "indent": indent,
            "dedent": dedent,
            "wrap": wrap,
            "truncate": truncate,
            "pad": pad,
            "repeat": repeat,
            "quote": quote,
            "squote": squote,
            "replace": lambda value, old, new: str(value).replace(old, new),
            "contains": lambda value, part: part in value,
            "hasPrefix": lambda value, prefix: str(value).startswith(prefix),
            "hasSuffix": lambda value, suffix: str(value).endswith(suffix),
            "split": split,
            "join": join,
            # collections and comparisons
            "list": make_list,
            "dict": make_dict,
            "first": first,
            "last": last,
            "len": length,
            "empty": empty,
            "notEmpty": lambda value: not empty(value),
            "eq": lambda a, b: a == b,
            "ne": lambda a, b: a != b,
            "lt": lambda a, b: a < b,
            "gt": lambda a, b: a > b,
            # conditionals
            "default": default,
            "coalesce": coalesce,
            "ternary": ternary,
            # arithmetic
            "add": add,
            "sub": sub,
            "mul": mul,
            "div": div,
            "mod": mod,
            "toInt": to_int,
            "toFloat": to_float,
            "toString": to_string,
            # identifiers
            "taskID": self.task_id,
            "taskIDShort": self.task_id_short,
            "randomID": self.random_id,
            # time
            "now": self.now,
            "today": self.today,
            "tomorrow": self.tomorrow,
            "formatDate": self.format_date,
            "parseDate": self.parse_date,
            "addDays": self.add_days,
            "workingDays": self.working_days,
            # workflow
            "zenflowStages": zenflow_stages,
            "stageNumber": stage_number,
            "stageName": stage_name,
            "nextStage": next_stage,
            "prevStage": prev_stage,
            "isStageCompleted": is_stage_completed,
            "stageDirectory": stage_directory,
            # paths
            "workspacePath": self.workspace_path,
            "relativePath": self.relative_path,
            "joinPath": join_path,
            "fileName": file_name,
            "fileExt": file_ext,
            "dirName": dir_name,
            # metadata
            "zenVersion": lambda: zen.__version__,
            "zenWorkspace": lambda: self.workspace_root,
        }
