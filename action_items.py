"""
Action items: parsing, AI-output decoding and reconciliation against tasks.

find_unmatched() keeps only the extracted items that no existing task already
covers. An item is covered when a task's content contains it, is contained in
it, or shares enough words with it (word_overlap > 0.70).
"""

import json
import re
from dataclasses import dataclass

SIMILARITY_THRESHOLD = 0.70

ACTION_ITEMS_HEADER = re.compile(
    r'^\s*(?:#{1,6}\s*|\*{1,2})?action\s+items?\b[^\n]*$',
    re.IGNORECASE | re.MULTILINE,
)
LIST_ITEM = re.compile(r'^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$')
OWNER_SUFFIX = re.compile(r'\s*[(\[]\s*(?:owner|assignee|assigned to)\s*:\s*([^)\]]+)[)\]]\s*$', re.IGNORECASE)
DASH_OWNER_SUFFIX = re.compile(r'\s+[—–-]\s+([A-Z][\w.\'-]*(?:\s+[A-Z][\w.\'-]*)?)\s*$')
AT_OWNER_SUFFIX = re.compile(r'\s+@([\w.\'-]+)\s*$')
DUE_SUFFIX = re.compile(r'\s*[(\[]\s*due:?\s*(\d{4}-\d{2}-\d{2})\s*[)\]]\s*$', re.IGNORECASE)


@dataclass(frozen=True)
class ActionItem:
    description: str
    assignee: str | None = None
    assignee_email: str | None = None
    due_date: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ActionItem | None':
        """Build from a webhook / meetings API / AI JSON item. None if empty.

        Raises ValueError when a field has the wrong type.
        """
        if data is None:
            return None
        if isinstance(data, str):
            data = {'description': data}
        if not isinstance(data, dict):
            raise ValueError(f"Action item must be an object or string, got {type(data).__name__}")
        description = _optional_str(data, 'description') or _optional_str(data, 'text') or _optional_str(data, 'title')
        description = (description or '').strip()
        if not description:
            return None

        assignee = data.get('assignee')
        assignee_email = _optional_str(data, 'assignee_email')
        if isinstance(assignee, dict):
            assignee_email = assignee_email or _optional_str(assignee, 'email')
            assignee = _optional_str(assignee, 'name')
        elif assignee is not None and not isinstance(assignee, str):
            raise ValueError(f"Action item assignee must be a string, got {type(assignee).__name__}")
        due = _optional_str(data, 'due_date') or _optional_str(data, 'due')
        return cls(
            description=description,
            assignee=(assignee or '').strip() or None,
            assignee_email=(assignee_email or '').strip().lower() or None,
            due_date=(due or '').strip() or None,
        )


def _optional_str(data: dict, name: str) -> str | None:
    value = data.get(name)
    if value is None or isinstance(value, str):
        return value
    raise ValueError(f"Action item field '{name}' must be a string, got {type(value).__name__}")


@dataclass(frozen=True)
class Task:
    id: str
    content: str
    due_date: str | None = None
    assignee_id: str | None = None
    url: str | None = None


def _words(text: str) -> set[str]:
    return set(text.lower().split())


def word_overlap(a: str, b: str) -> float:
    """|words(a) & words(b)| / max(|words(a)|, |words(b)|)."""
    words_a = _words(a)
    words_b = _words(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def is_covered(item_text: str, task_content: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    item = item_text.strip().lower()
    task = (task_content or '').strip().lower()
    if not item or not task:
        return False
    if item in task or task in item:
        return True
    return word_overlap(item, task) > threshold


def find_unmatched(items: list[ActionItem], tasks: list[Task],
                   threshold: float = SIMILARITY_THRESHOLD) -> list[ActionItem]:
    """Return the items no existing task already covers, in input order."""
    if not items:
        return []
    if not tasks:
        return list(items)
    return [
        item for item in items
        if not any(is_covered(item.description, task.content, threshold) for task in tasks)
    ]


def parse_action_items(text: str | None) -> list[ActionItem]:
    """Regex fallback: the list following an "Action Items" header.

    Accepts numbered ("1." / "1)") and bulleted lines. Stops at the first
    non-list line after the list has started, or at the next header.
    """
    if not text:
        return []
    header = ACTION_ITEMS_HEADER.search(text)
    if not header:
        return []

    items = []
    started = False
    for line in text[header.end():].splitlines():
        if not line.strip():
            if started:
                break
            continue
        match = LIST_ITEM.match(line)
        if not match:
            if started or line.lstrip().startswith('#'):
                break
            continue
        started = True
        item = _parse_item_line(match.group(1))
        if item:
            items.append(item)
    return items


def _parse_item_line(line: str) -> ActionItem | None:
    description = re.sub(r'^\[[ xX]\]\s*', '', line).strip()
    due_date = None
    assignee = None

    due_match = DUE_SUFFIX.search(description)
    if due_match:
        due_date = due_match.group(1)
        description = description[:due_match.start()].rstrip()

    for pattern in (OWNER_SUFFIX, AT_OWNER_SUFFIX, DASH_OWNER_SUFFIX):
        owner_match = pattern.search(description)
        if owner_match:
            assignee = owner_match.group(1).strip()
            description = description[:owner_match.start()].rstrip()
            break

    if not due_date:
        due_match = DUE_SUFFIX.search(description)
        if due_match:
            due_date = due_match.group(1)
            description = description[:due_match.start()].rstrip()

    description = description.strip(' *_')
    if not description:
        return None
    return ActionItem(description=description, assignee=assignee, due_date=due_date)


def parse_ai_action_items(output: str) -> list[ActionItem]:
    """Decode the AI extraction response (a JSON list, possibly fenced).

    Raises ValueError when no JSON list can be recovered so callers can fall
    back to parse_action_items().
    """
    text = (output or '').strip()
    fenced = re.search(r'```(?:json)?\s*(.*?)\s*```', text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    else:
        bracket = re.search(r'\[.*\]', text, re.DOTALL)
        if bracket:
            text = bracket.group(0)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"AI action items are not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get('action_items', data.get('items'))
    if not isinstance(data, list):
        raise ValueError("AI action items response is not a list")

    return [item for item in (ActionItem.from_dict(d) for d in data) if item]
