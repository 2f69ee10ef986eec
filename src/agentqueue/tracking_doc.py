from __future__ import annotations

import re


COMPLETED_HEADING = "## Completed"
_UNCHECKED_PATTERN = r"^(?P<prefix>\s*[-*]\s+)\[ \](?P<rest>.*#{number}\b.*)$"


def mark_task_complete(text: str, *, task_number: int, title: str, pr_number: int) -> str:
    """Return ``text`` with the task marked done.

    An unchecked checklist line that mentions ``#task_number`` is ticked in
    place. Otherwise an entry is appended under the completed heading, which is
    created at the end of the document when missing. Already-recorded tasks are
    left untouched.
    """
    pattern = re.compile(_UNCHECKED_PATTERN.format(number=task_number), re.MULTILINE)
    ticked, count = pattern.subn(r"\g<prefix>[x]\g<rest>", text, count=1)
    if count:
        return ticked

    if re.search(rf"^\s*[-*]\s+\[x\].*#{task_number}\b", text, re.MULTILINE | re.IGNORECASE):
        return text

    entry = f"- [x] #{task_number} {title} (PR #{pr_number})"
    lines = text.splitlines()
    if COMPLETED_HEADING not in (line.strip() for line in lines):
        body = text.rstrip("\n")
        prefix = f"{body}\n\n" if body else ""
        return f"{prefix}{COMPLETED_HEADING}\n\n{entry}\n"

    heading_index = next(i for i, line in enumerate(lines) if line.strip() == COMPLETED_HEADING)
    insert_at = heading_index + 1
    while insert_at < len(lines) and not lines[insert_at].startswith("#"):
        insert_at += 1
    # Keep the entry attached to the section's last non-blank line.
    while insert_at > heading_index + 1 and not lines[insert_at - 1].strip():
        insert_at -= 1
    if insert_at == heading_index + 1:
        lines[insert_at:insert_at] = ["", entry]
    else:
        lines.insert(insert_at, entry)
    return "\n".join(lines) + "\n"
