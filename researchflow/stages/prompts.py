"""Prompt text and context formatters for every stage.

Pure functions only: each builder turns already-loaded context (ticker
metadata, earlier answers, sector notes, document snippets) into the exact
system/user strings sent to the provider.  Keeping them deterministic is
what makes the completion cache work: the same context always produces the
same request body and therefore the same fingerprint.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from researchflow.core.models import TickerProfile

__all__ = [
    "STAGE1_SYSTEM_PROMPT",
    "STAGE2_SYSTEM_PROMPT",
    "SUMMARY_SYSTEM_PROMPT",
    "FOCUS_SYSTEM_PROMPT",
    "FOCUS_USER_TEMPLATE",
    "GroupPrompt",
    "meta_lines",
    "build_stage1_user_prompt",
    "build_stage2_user_prompt",
    "build_group_prompts",
    "build_summary_prompt",
    "format_stage1_summary",
    "format_stage2_summary",
    "format_doc_snippets",
    "format_stage3_summary",
    "format_focus_stage1",
    "format_focus_stage2",
    "format_focus_snippets",
    "chat_body",
]

# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

STAGE1_SYSTEM_PROMPT: Final[str] = (
    "You are a buy-side screening analyst. Classify each ticker as one of "
    '"uninvestible", "borderline", or "consider". Return strict JSON with the shape '
    '{"label": "uninvestible|borderline|consider", "reasons": [short bullet strings], '
    '"flags": {"leverage": string, "governance": string, "dilution": string}}. '
    "Be decisive, grounded in fundamentals, and keep reasons concise."
)

STAGE2_SYSTEM_PROMPT: Final[str] = (
    "You are a buy-side equity analyst performing a thematic scoring pass. Return strict "
    'JSON with the shape {"scores": {"profitability": {"score": int, "rationale": string}, '
    '"reinvestment": {"score": int, "rationale": string}, '
    '"leverage": {"score": int, "rationale": string}, '
    '"moat": {"score": int, "rationale": string}, '
    '"timing": {"score": int, "rationale": string}}, '
    '"verdict": {"go_deep": boolean, "summary": string, "risks": [string], '
    '"opportunities": [string]}, "next_steps": [string]}. '
    "Scores must be integers from 0-10. Keep rationales under 160 characters and ground "
    "all commentary in the provided facts."
)

_BUSINESS_SYSTEM_PROMPT: Final[str] = (
    'You are a buy-side equity analyst. Return strict JSON matching {"business_model": '
    'string, "moat": {"score": int, "rationale": string}, "customer_lock_in": string, '
    '"growth_drivers": [string]}. Scores must be 0-10. Keep rationales under 160 '
    "characters and ground commentary in supplied facts."
)

_FINANCIALS_SYSTEM_PROMPT: Final[str] = (
    "You are evaluating unit economics and capital allocation. Return JSON "
    '{"unit_economics": {"score": int, "rationale": string}, "capital_allocation": '
    '{"score": int, "rationale": string}, "balance_sheet": {"score": int, "rationale": '
    'string}, "kpis": [string]}. Scores must be 0-10. Summaries must be concise and factual.'
)

_RISKS_SYSTEM_PROMPT: Final[str] = (
    'You are cataloguing risk and timing. Return JSON {"principal_risks": [string], '
    '"catalysts": [string], "timing_window": string, "monitoring_flags": [string]}. '
    "Keep lists to a maximum of 5 items and ensure each item is specific."
)

SUMMARY_SYSTEM_PROMPT: Final[str] = (
    'You are preparing an investment memo. Return JSON {"verdict": string, "confidence": '
    'int, "thesis": string, "watch_items": [string], "next_actions": [string]}. '
    "Confidence must be 0-100. Thesis should be < 200 words and evidence-backed. "
    "Watch items/next actions max 5 each."
)

FOCUS_SYSTEM_PROMPT: Final[str] = (
    "You are a buy-side research assistant answering a follow-up question about one "
    'ticker. Return strict JSON {"summary": string, "answer": string, "confidence": '
    'number between 0 and 1, "citations": [string]}. Base the answer on the earlier '
    "stage findings and the retrieved snippets; cite snippets by their [ref] and say so "
    "when the evidence is insufficient."
)

FOCUS_USER_TEMPLATE: Final[str] = (
    "Ticker: {{ ticker }}\n"
    "Question: {{ question }}\n\n"
    "Stage 1 triage:\n{{ stage1_summary }}\n\n"
    "Stage 2 verdict:\n{{ stage2_summary }}\n\n"
    "Stage 3 thesis:\n{{ stage3_summary }}\n\n"
    "Retrieved snippets:\n{{ retrieval_snippets }}\n\n"
    "Answer the question directly and keep the summary under 80 words."
)

_GROUP_FOCUS: Final[dict[str, str]] = {
    "business": (
        "Focus: describe the business model, moat durability, customer lock-in dynamics, "
        "and near-term growth drivers."
    ),
    "financials": (
        "Focus: comment on unit economics resilience, capital allocation discipline, "
        "balance sheet flexibility, and standout KPIs."
    ),
    "risks": (
        "Focus: enumerate principal risks, catalysts, the likely timing window "
        "(e.g., 3-6 months) and monitoring flags for follow-up."
    ),
}

_GROUP_SYSTEM: Final[dict[str, str]] = {
    "business": _BUSINESS_SYSTEM_PROMPT,
    "financials": _FINANCIALS_SYSTEM_PROMPT,
    "risks": _RISKS_SYSTEM_PROMPT,
}

_SNIPPET_CHARS: Final[int] = 800


@dataclass(frozen=True)
class GroupPrompt:
    """One stage 3 prompt: ``key`` doubles as the answer's question group."""

    key: str
    system: str
    user: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def meta_lines(ticker: str, meta: TickerProfile | None) -> list[str]:
    """The ticker header shared by stage 1, 2 and 3 prompts."""
    return [
        f"Ticker: {ticker}",
        f"Name: {(meta.name if meta else None) or 'Unknown'}",
        f"Exchange: {(meta.exchange if meta else None) or 'n/a'}",
        f"Country: {(meta.country if meta else None) or 'n/a'}",
        f"Sector: {(meta.sector if meta else None) or 'n/a'}",
        f"Industry: {(meta.industry if meta else None) or 'n/a'}",
    ]


def chat_body(system: str, user: str) -> dict[str, Any]:
    """Base JSON-mode chat request body (before request settings)."""
    return {
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
    }


# ---------------------------------------------------------------------------
# Stage 1 / stage 2
# ---------------------------------------------------------------------------


def build_stage1_user_prompt(ticker: str, meta: TickerProfile | None) -> str:
    return "\n".join(meta_lines(ticker, meta))


def build_stage2_user_prompt(
    ticker: str,
    meta: TickerProfile | None,
    stage1: Mapping[str, Any] | None,
    sector_notes: str | None,
) -> str:
    """Stage 2 prompt: ticker header, stage 1 findings and sector heuristics."""
    lines = meta_lines(ticker, meta)
    lines.append("")
    stage1 = stage1 or {}

    label = stage1.get("label") or stage1.get("classification")
    if label:
        lines.append(f"Stage 1 classification: {label}")

    reasons = stage1.get("reasons")
    if isinstance(reasons, list) and reasons:
        lines.append("Stage 1 reasons:")
        lines.extend(f"  {index}. {reason}" for index, reason in enumerate(reasons[:4], start=1))

    flags = stage1.get("flags")
    if isinstance(flags, Mapping):
        entries = [f"{key}: {value}" for key, value in flags.items() if value not in (None, "")]
        if entries:
            lines.append("Risk flags:")
            lines.extend(f"  - {entry}" for entry in entries[:4])

    summary = _text(stage1.get("summary"))
    if summary:
        lines.append("Stage 1 summary:")
        lines.append(summary)

    if sector_notes:
        lines.append("")
        lines.append("Sector heuristics to consider:")
        lines.append(sector_notes)

    lines.append("")
    lines.append("Deliver mid-depth scoring with crisp rationales tied to these facts.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Stage 3
# ---------------------------------------------------------------------------


def format_stage1_summary(answer: Mapping[str, Any] | None) -> str:
    if not answer:
        return "Stage 1 output unavailable."
    label = answer.get("label") or answer.get("classification") or "n/a"
    reasons = answer.get("reasons") if isinstance(answer.get("reasons"), list) else []
    numbered = "\n".join(f"{i}. {reason}" for i, reason in enumerate(reasons[:4], start=1))
    text = f"Stage 1 label: {label}\n"
    if numbered:
        text += f"Key reasons:\n{numbered}"
    return text.strip()


def format_stage2_summary(answer: Mapping[str, Any] | None) -> str:
    if not answer:
        return "Stage 2 verdict unavailable."
    verdict = answer.get("verdict") if isinstance(answer.get("verdict"), Mapping) else {}
    scores = answer.get("scores") if isinstance(answer.get("scores"), Mapping) else {}
    lines: list[str] = []
    summary = _text(verdict.get("summary"))
    if summary:
        lines.append(f"Verdict: {summary}")
    if "go_deep" in verdict:
        go_deep = verdict["go_deep"]
        if not isinstance(go_deep, bool):
            go_deep = str(go_deep).lower() == "true"
        lines.append(f"Go deep: {'yes' if go_deep else 'no'}")
    for key, value in scores.items():
        if not isinstance(value, Mapping):
            continue
        score = value.get("score")
        rationale = value.get("rationale")
        if score is not None or isinstance(rationale, str):
            shown = f"{score}/10" if isinstance(score, int | float) else "n/a"
            lines.append(f"{key}: {shown} - {rationale if rationale is not None else 'n/a'}")
    return "\n".join(lines) if lines else "Stage 2 scores unavailable."


def format_doc_snippets(chunks: Sequence[tuple[str | None, str]]) -> str:
    if not chunks:
        return "No external excerpts supplied."
    return "\n---\n".join(
        f"Snippet {index} - {source or 'Unknown source'}:\n{chunk[:_SNIPPET_CHARS]}"
        for index, (source, chunk) in enumerate(chunks, start=1)
    )


def build_group_prompts(
    ticker: str,
    meta: TickerProfile | None,
    stage1_summary: str,
    stage2_summary: str,
    docs: str,
) -> list[GroupPrompt]:
    """The three deep-dive prompts, in execution order."""
    header = "\n".join(
        [
            *meta_lines(ticker, meta),
            "",
            stage1_summary,
            "",
            stage2_summary,
            "",
            "Document excerpts:",
            docs,
        ]
    )
    return [
        GroupPrompt(key=key, system=_GROUP_SYSTEM[key], user=f"{header}\n\n{focus}")
        for key, focus in _GROUP_FOCUS.items()
    ]


def build_summary_prompt(
    ticker: str,
    meta: TickerProfile | None,
    stage1_summary: str,
    stage2_summary: str,
    group_outputs: Sequence[Mapping[str, Any]],
) -> GroupPrompt:
    """Memo prompt composed from the three group answers."""
    base = "\n".join(
        [
            f"Ticker: {ticker}",
            f"Name: {(meta.name if meta else None) or 'Unknown'}",
            "",
            stage1_summary,
            "",
            stage2_summary,
            "",
            "Deep dive findings:",
            json.dumps(list(group_outputs), ensure_ascii=False, default=str),
        ]
    )
    return GroupPrompt(
        key="summary",
        system=SUMMARY_SYSTEM_PROMPT,
        user=(
            f"{base}\n\nCompose the final verdict, conviction score, thesis paragraph, "
            "key watch items, and next actions."
        ),
    )


# ---------------------------------------------------------------------------
# Focus
# ---------------------------------------------------------------------------


def format_focus_stage1(answer: Mapping[str, Any] | None) -> str:
    if not answer:
        return "Stage 1 answer unavailable."
    label = answer.get("label") or answer.get("classification") or "n/a"
    reasons = answer.get("reasons") if isinstance(answer.get("reasons"), list) else []
    text = f"Label: {label}"
    if reasons:
        numbered = "\n".join(f"{i}. {reason}" for i, reason in enumerate(reasons[:3], start=1))
        text += f"\nReasons:\n{numbered}"
    return text


def format_focus_stage2(answer: Mapping[str, Any] | None) -> str:
    if not answer:
        return "Stage 2 answer unavailable."
    verdict = answer.get("verdict") if isinstance(answer.get("verdict"), Mapping) else {}
    summary = _text(verdict.get("summary")) or "No verdict provided."
    go_deep = verdict.get("go_deep")
    if isinstance(go_deep, str):
        go_deep = go_deep.lower() == "true"
    if isinstance(go_deep, bool):
        summary += f"\nGo deep: {'yes' if go_deep else 'no'}"
    return summary


def format_stage3_summary(answer: Mapping[str, Any] | None, answer_text: str | None = None) -> str:
    if not answer and not _text(answer_text):
        return "Stage 3 thesis unavailable."
    answer = answer or {}
    for candidate in (answer_text, answer.get("thesis"), answer.get("summary")):
        if _text(candidate):
            return _text(candidate)
    return "No Stage 3 thesis available."


def format_focus_snippets(chunks: Sequence[tuple[str | None, str]]) -> str:
    """``[ref] chunk`` blocks; refs are 1-based and match the stored citations."""
    if not chunks:
        return "No retrieved snippets available."
    return "\n\n".join(f"[{ref}] {chunk}" for ref, (_, chunk) in enumerate(chunks, start=1))
