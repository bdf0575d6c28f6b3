from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Callable

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

import config

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI


SYSTEM_PROMPT = """
You are a professional trading support analyst.

Rules:
- Put risk management first: capital preservation and controlled exposure
  over chasing reward.
- When a chart or account screenshot is shared, give concrete technical
  analysis: structure, key levels, entry zones, risk areas, possible setups.
- Support trading psychology: losses, overtrading, revenge trading and
  confidence drops deserve empathy and practical coping steps.
- Give educational insight only. No financial advice, trade signals, or
  instructions to buy or sell.
- Never suggest depositing more money, never push high-risk trades, and
  never ask which broker the trader uses.
- Speak as a human professional; do not describe yourself as an AI or model.
- Keep answers short, structured and actionable, and stay on the topic the
  user picked.
""".strip()


def _messages(parts: list[str]) -> list[BaseMessage]:
    return [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content="\n\n".join(parts))]


def _trade_setup(message: str, image_ref: str) -> list[BaseMessage]:
    parts = [f"Chart screenshot: {image_ref}"] if image_ref else []
    parts.append(f"Trade details: {message}")
    parts.append(
        "Review the trade under these headings:\n"
        "- Entry quality\n"
        "- Stop loss placement\n"
        "- Take profit realism\n"
        "- Risk/reward ratio\n"
        "- How to improve it\n"
        "- Red flags"
    )
    return _messages(parts)


def _account_health(message: str, image_ref: str) -> list[BaseMessage]:
    parts = [f"Account screenshot: {image_ref}"] if image_ref else []
    parts.append(
        f"Account details: {message}\n"
        "Break down risk exposure, lot sizing and signs of overtrading, then "
        "recommend how to stabilize the account."
    )
    return _messages(parts)


def _psychology(message: str, image_ref: str) -> list[BaseMessage]:
    parts = [f"Context screenshot: {image_ref}"] if image_ref else []
    parts.append(
        f"How the trader feels right now: {message}\n"
        "Offer mindset support and practical coping techniques. Point out any "
        "revenge trading, overtrading, fear or overconfidence, and help them "
        "refocus on discipline and protecting capital."
    )
    return _messages(parts)


def _funded_account(message: str, image_ref: str) -> list[BaseMessage]:
    parts = [f"Challenge statistics screenshot: {image_ref}"] if image_ref else []
    parts.append(
        f"Challenge details: {message}\n"
        "Assess the risk of breaking the evaluation rules, whether position "
        "sizing is sound, drawdown exposure, and whether they are on track to "
        "pass. Suggest how to stay inside the limits."
    )
    return _messages(parts)


def _margin_call(message: str, image_ref: str) -> list[BaseMessage]:
    parts = [f"Critical screenshot: {image_ref}"] if image_ref else []
    parts.append(
        f"Margin call situation: {message}\n"
        "Give immediate risk reduction steps: what to close first and how to "
        "cut exposure. Add brief advice for staying calm. Preserving capital "
        "comes before everything else."
    )
    return _messages(parts)


TOPICS: dict[str, Callable[[str, str], list[BaseMessage]]] = {
    "trade_setup": _trade_setup,
    "account_health": _account_health,
    "psychology": _psychology,
    "funded_account": _funded_account,
    "margin_call": _margin_call,
}


def is_known_topic(topic: str) -> bool:
    return topic in TOPICS


def build_messages(topic: str, message: str, image_ref: str | None = None) -> list[BaseMessage]:
    try:
        builder = TOPICS[topic]
    except KeyError as exc:
        raise ValueError(f"Unknown topic: {topic}") from exc
    return builder(message, image_ref or "")


@lru_cache(maxsize=1)
def _get_llm() -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = config.env("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set.")

    kwargs: dict[str, object] = {
        "model": config.env("OPENAI_MODEL", "gpt-4"),
        "api_key": api_key,
        "temperature": config.float_env("OPENAI_TEMPERATURE", 0.4),
        "timeout": config.float_env("OPENAI_TIMEOUT_SECONDS", 60.0),
    }
    base_url = config.env("OPENAI_BASE_URL")
    if base_url:
        kwargs["base_url"] = base_url
    max_tokens_raw = config.env("OPENAI_MAX_TOKENS")
    if max_tokens_raw:
        kwargs["max_tokens"] = int(max_tokens_raw)
    return ChatOpenAI(**kwargs)


def generate_reply(topic: str, message: str, image_ref: str | None = None) -> str:
    response = _get_llm().invoke(build_messages(topic, message, image_ref))
    content = getattr(response, "content", None) or ""
    if not isinstance(content, str):
        content = str(content)
    content = content.strip()
    if not content:
        raise RuntimeError("No reply from the completion model.")
    return content
