import datetime
import logging
import os

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import PromptTemplate
from langchain_openai import ChatOpenAI

from . import messages
from .gateway.base_gateway import MessageContent, MessagingGateway, RetryPolicy
from .models import RunResult
from .utils import mention, split_text_smart

logger = logging.getLogger(__name__)


def _format_answers(result: RunResult) -> str:
    lines = []
    for outcome in result.completed():
        lines.append(f"**{mention(outcome.member_id)}**")
        for answer in outcome.answers:
            lines.append(f"• {answer.prompt}\n  {answer.response}")
        lines.append("")
    return "\n".join(lines).strip()


def format_summary(result: RunResult, standup_name: str, date: datetime.date = None) -> str:
    """Plain summary: every completed member with their answers, everyone else under "No answer"."""
    date = date or result.local_date or datetime.date.today()
    summary = f"📊 **{standup_name} - {date.isoformat()}**\n\n"

    if result.completed():
        summary += _format_answers(result) + "\n\n"
    else:
        summary += "📭 Nobody answered today.\n\n"

    # Opted out and undeliverable look the same here, the reason only goes to the logs
    no_answer = result.without_answer()
    if no_answer:
        summary += "**No answer:** " + ", ".join(mention(o.member_id) for o in no_answer) + "\n"
    return summary.strip()


class LLMSummaryWriter:
    """Condenses the answers with an OpenAI chat model."""

    def __init__(self, model_name: str = "gpt-4o-mini", llm=None):
        self.llm = llm if llm is not None else ChatOpenAI(model_name=model_name, temperature=0)
        self.chain = PromptTemplate.from_template(messages.summary_prompt) | self.llm | StrOutputParser()

    @classmethod
    def from_env(cls):
        """Return a writer if OPENAI_API_KEY is set, else None."""
        if not os.getenv("OPENAI_API_KEY"):
            return None
        return cls(model_name=os.getenv("STANDUP_SUMMARY_MODEL", "gpt-4o-mini"))

    async def write(self, result: RunResult, standup_name: str, date: datetime.date) -> str:
        text = await self.chain.ainvoke({
            "standup_name": standup_name,
            "date": date.isoformat(),
            "answers": _format_answers(result),
        })
        no_answer = result.without_answer()
        if no_answer:
            text += "\n\n**No answer:** " + ", ".join(mention(o.member_id) for o in no_answer)
        return text.strip()


class ChannelSummaryPoster:
    """Summarizer that posts the run summary to the standup channel."""

    def __init__(self, gateway: MessagingGateway, standup_name: str, writer: LLMSummaryWriter = None,
                 retry: RetryPolicy = None):
        self.gateway = gateway
        self.standup_name = standup_name
        self.writer = writer
        self.retry = retry or RetryPolicy()

    async def _render(self, result: RunResult) -> str:
        # date of the cycle in the standup timezone, not the server date
        date = result.local_date or datetime.date.today()
        if self.writer is not None and result.completed():
            try:
                return await self.writer.write(result, self.standup_name, date)
            except Exception as e:
                logger.warning(f"LLM summary failed, posting the plain summary instead: {e!r}")
        return format_summary(result, self.standup_name, date)

    async def summarize(self, result: RunResult):
        """Post the summary.

        :raises TransportError: if a segment could not be delivered.
        """
        text = await self._render(result)
        for segment in split_text_smart(text):
            await self.retry.call(f"Posting summary of {result.run_id}",
                                  lambda: self.gateway.post_message(result.channel, MessageContent(segment)))
        for outcome in result.without_answer():
            if outcome.reason:
                logger.info(f"{outcome.member_id} has no answer in {result.run_id}: {outcome.reason}")
        logger.info(f"Posted summary of {result.run_id} to {result.channel}")
