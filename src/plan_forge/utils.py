from __future__ import annotations

import re

from .models import ReviewResult, ViabilityResult

MAX_SLUG_LENGTH = 30


def slugify_name(name: str, *, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Lower-case dash slug, truncated on a word boundary when possible."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    if len(slug) <= max_length:
        return slug or "session"
    cut = slug[:max_length]
    if slug[max_length] != "-" and "-" in cut:
        cut = cut.rsplit("-", 1)[0]
    return cut.rstrip("-") or "session"


def dedupe_slug(base_slug: str, used: set[str], *, max_length: int = MAX_SLUG_LENGTH) -> str:
    if base_slug not in used:
        used.add(base_slug)
        return base_slug

    suffix_ord = ord("a")
    while True:
        suffix = f"-{chr(suffix_ord)}"
        candidate = f"{base_slug[: max_length - len(suffix)]}{suffix}".rstrip("-")
        if candidate not in used:
            used.add(candidate)
            return candidate
        suffix_ord += 1
        if suffix_ord > ord("z"):
            raise ValueError(f"unable to disambiguate slug for base '{base_slug}'")


def render_viability_feedback(result: ViabilityResult) -> str:
    lines = [f"[MUST FIX] {item.rule_id}: {item.message}" for item in result.blocking]
    lines.extend(
        f"[CONSIDER] {item.rule_id}: {item.message}" for item in result.advisory if item.rule_id != "rule-skipped"
    )
    return "\n".join(lines)


def render_review_feedback(review: ReviewResult) -> str:
    lines = [f"[SHOULD FIX] {gap}" for gap in review.gaps]
    lines.extend(f"[CLARIFY] {question}" for question in review.questions)
    if review.feedback.strip():
        lines.append(review.feedback.strip())
    return "\n".join(lines)


def render_human_feedback(feedback: str) -> str:
    return f"[HUMAN] {feedback.strip()}"


def merge_feedback(*parts: str | None) -> str | None:
    merged = "\n\n".join(part.strip() for part in parts if part and part.strip())
    return merged or None
