CALLER_ROLES = ("user", "customer", "caller")
ASSISTANT_ROLES = ("assistant", "agent", "bot")


def normalize_role(role: str) -> str:
    """Collapse provider role names into "user" or "assistant"."""
    lower = (role or "").lower()
    if lower in CALLER_ROLES:
        return "user"
    if lower in ASSISTANT_ROLES:
        return "assistant"
    return lower


def to_plain_text(log: list[dict]) -> str:
    """Convert transcript log to plain text format.

    Caller lines prefixed with "Customer:", assistant lines with "Assistant:",
    function invocations shown as "[Function: name]".
    """
    if not log:
        return ""

    lines = []
    for entry in log:
        role = entry.get("role", "")
        if role == "user":
            lines.append(f"Customer: {entry['content']}")
        elif role == "assistant":
            lines.append(f"Assistant: {entry['content']}")
        elif role == "function":
            lines.append(f"[Function: {entry['name']}]")
    return "\n".join(lines)


def caller_text(log: list[dict]) -> str:
    """Everything the caller said, space-joined, for whole-call classification."""
    return " ".join(entry["content"] for entry in log if entry.get("role") == "user")
