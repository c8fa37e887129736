from __future__ import annotations

from collections.abc import Sequence
from typing import Final

EXPLAIN_SYSTEM: Final[str] = (
    "You are a helpful tutor that explains MNIST digit predictions in simple, visual language.\n"
    "- Be concise (<=120 words).\n"
    "- Mention 2-3 visual cues (strokes, loops, corners, symmetry).\n"
    "- If confidence < 0.8, note likely confusions and tips to redraw for clarity."
)

QUIZ_SYSTEM: Final[str] = (
    "You are a coach. Create 3 short drawing tasks to practice confusing MNIST digits."
)

DEFAULT_SUMMARIZE_TEMPLATE: Final[str] = (
    "Summarize the following chat transcript in a few sentences.\n"
    "Keep names, decisions and open questions; drop greetings and filler.\n"
    "\n"
    "{input}\n"
    "\n"
    "Summary:"
)

_PLACEHOLDERS: Final[tuple[str, ...]] = ("{{$input}}", "{input}")


def format_probs(probs: Sequence[float]) -> str:
    return ", ".join(f"{i}:{p:.2f}" for i, p in enumerate(probs))


def explain_user(digit: int, confidence: float, probs: Sequence[float], thumbnail_b64: str) -> str:
    lines = [
        f"Predicted: {digit}",
        f"Confidence: {confidence:.2f}",
        f"Top-{len(probs)} probabilities: {format_probs(probs)}",
        "",
        "Describe what patterns likely led to this prediction and how to reduce ambiguity if any.",
    ]
    if thumbnail_b64:
        lines.append(f"28x28 input image as base64 PNG: {thumbnail_b64}")
    return "\n".join(lines)


def quiz_user(recent_mistakes: Sequence[int]) -> str:
    mistakes = ", ".join(str(m) for m in recent_mistakes)
    return f"Recent mistakes: {mistakes}. Output JSON with fields: instructions[], tips."


def render_template(template: str, text: str) -> str:
    """Substitute the transcript into ``{input}`` (or ``{{$input}}``) without str.format."""
    for ph in _PLACEHOLDERS:
        if ph in template:
            return template.replace(ph, text)
    return f"{template}\n\n{text}"
