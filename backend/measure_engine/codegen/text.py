"""Text helpers shared by the generators and the override layer."""


def single_line(text) -> str:
    """Collapse whitespace runs, newlines included, to single spaces."""
    return " ".join(str(text).split())
