from types import SimpleNamespace

import httpx
import openai
import pytest

from transcript_hub.core.errors import RemoteError, TransientRemoteError
from transcript_hub.prompts.loader import get_system_prompt, get_user_prompt, load_prompts
from transcript_hub.summaries.summarizer import SummaryClient, summary_flags

REQUEST = httpx.Request("POST", "https://api.openai.test/v1/chat/completions")


class FakeCompletions:
    def __init__(self, content=None, exc=None):
        self.content = content
        self.exc = exc
        self.kwargs = []

    def create(self, **kwargs):
        self.kwargs.append(kwargs)
        if self.exc is not None:
            raise self.exc
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_prompts_load_with_placeholders():
    prompts = load_prompts("earnings_summary", version="v1")
    assert set(prompts) == {"system", "user"}
    assert "<<ANALYST>>" in get_system_prompt("earnings_summary")
    assert "<<TRANSCRIPT>>" in get_user_prompt("earnings_summary")
    with pytest.raises(FileNotFoundError):
        load_prompts("earnings_summary", version="v999")


def test_summarize_fills_prompt_and_flags():
    completions = FakeCompletions(content="🎯 THE HIDDEN GOLDMINE\nThe Boring Quote: we own the trucks")
    summarizer = SummaryClient(client=_client(completions), model="m", max_chars=20)

    out = summarizer.summarize("x" * 50, {"ticker": "AAA", "quarter": "Q3 2024", "analyst_type": "Claude"})

    assert out["analyst_type"] == "Claude"
    assert out["flags"] == {"has_hidden_goldmine": True, "has_boring_quote": True, "has_size_potential": False}
    call = completions.kwargs[0]
    assert call["model"] == "m"
    system, user = call["messages"]
    assert "Claude" in system["content"]
    assert "AAA" in user["content"] and "Q3 2024" in user["content"]
    assert "x" * 20 in user["content"] and "x" * 21 not in user["content"]


def test_empty_output_is_remote_error():
    summarizer = SummaryClient(client=_client(FakeCompletions(content="   ")), model="m")
    with pytest.raises(RemoteError):
        summarizer.summarize("text", {"analyst_type": "Claude"})


@pytest.mark.parametrize(
    "exc, error",
    [
        (openai.APIConnectionError(request=REQUEST), TransientRemoteError),
        (openai.APITimeoutError(request=REQUEST), TransientRemoteError),
        (openai.RateLimitError("slow down", response=httpx.Response(429, request=REQUEST), body=None), TransientRemoteError),
        (openai.BadRequestError("bad prompt", response=httpx.Response(400, request=REQUEST), body=None), RemoteError),
    ],
)
def test_openai_errors_are_classified(exc, error):
    summarizer = SummaryClient(client=_client(FakeCompletions(exc=exc)), model="m")
    with pytest.raises(error) as raised:
        summarizer.summarize("text", {"analyst_type": "Claude"})
    if error is RemoteError:
        assert not isinstance(raised.value, TransientRemoteError)


def test_summary_flags_on_plain_text():
    assert summary_flags("nothing here") == {
        "has_hidden_goldmine": False,
        "has_boring_quote": False,
        "has_size_potential": False,
    }
