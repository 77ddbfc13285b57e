import logging
import time
from typing import Any, Dict, Optional

import openai

from transcript_hub.core.config import settings
from transcript_hub.core.errors import RemoteError, TransientRemoteError
from transcript_hub.core.openai_client import get_openai_client
from transcript_hub.prompts.loader import get_system_prompt, get_user_prompt

logger = logging.getLogger(__name__)

GOLDMINE_HEADER = "🎯 THE HIDDEN GOLDMINE"
BORING_QUOTE = "The Boring Quote:"
SIZE_POTENTIAL = "Size Potential:"


def summary_flags(content: str) -> Dict[str, bool]:
    """Which sections of the expected summary format the model actually produced."""
    return {
        "has_hidden_goldmine": GOLDMINE_HEADER in content,
        "has_boring_quote": BORING_QUOTE in content,
        "has_size_potential": SIZE_POTENTIAL in content,
    }


class SummaryClient:
    """Generate one analyst-style summary of an earnings call transcript via OpenAI chat completions.
    Rate limits, timeouts and connection errors surface as TransientRemoteError; other API errors and empty output as RemoteError.
    Why available: The summary worker's remote collaborator; prompts come from the versioned YAML loader."""

    def __init__(self, client: Any = None, model: Optional[str] = None, max_chars: Optional[int] = None):
        self._client = client
        self.model = model or settings.chat_model
        self.max_chars = max_chars or settings.summary_max_transcript_chars

    @property
    def client(self):
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def summarize(self, transcript_text: str, context: Dict[str, Any]) -> Dict[str, Any]:
        """Return {analyst_type, content, flags} for one transcript. context carries ticker, quarter label, analyst_type and optional focus."""
        analyst = context.get("analyst_type") or "generalist"
        text = transcript_text[: self.max_chars]
        system_msg = get_system_prompt("earnings_summary").replace("<<ANALYST>>", analyst)
        user_msg = (
            get_user_prompt("earnings_summary")
            .replace("<<TICKER>>", str(context.get("ticker", "")))
            .replace("<<QUARTER>>", str(context.get("quarter", "")))
            .replace("<<FOCUS>>", str(context.get("focus") or "growth analysis"))
            .replace("<<TRANSCRIPT>>", text)
        )

        t0 = time.perf_counter()
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_msg},
                    {"role": "user", "content": user_msg},
                ],
                temperature=0.15,
            )
        except (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientRemoteError(f"Summary call failed transiently: {e}") from e
        except openai.OpenAIError as e:
            raise RemoteError(f"Summary call failed: {e}") from e

        content = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        if not content:
            raise RemoteError("Summary model returned empty output")

        logger.info(
            "summary_generated",
            extra={
                "ticker": context.get("ticker"),
                "analyst_type": analyst,
                "chars": len(content),
                "latency_ms": int((time.perf_counter() - t0) * 1000),
            },
        )
        return {"analyst_type": analyst, "content": content, "flags": summary_flags(content)}
