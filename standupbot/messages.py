"""
Contains the texts the bot posts during a standup.
"""
from .events import ACTION_ANSWER, ACTION_NOT_WORKING, ACTION_START
from .gateway.base_gateway import Action, MessageContent

# Inert placeholder a superseded interactive message is edited to
SUPERSEDED = MessageContent(text="---")


def init_prompt(standup_name: str) -> MessageContent:
    return MessageContent(
        text=f"Hello mate 👋, it’s standup time for **{standup_name}**!\nShall we? 👉",
        actions=(
            Action(label="Not Working Today", action_id=ACTION_NOT_WORKING, style="secondary"),
            Action(label="Start Standup!", action_id=ACTION_START, style="primary"),
        ),
    )


def not_working_ack() -> MessageContent:
    return MessageContent(text="No worries, enjoy your day off! 🌴")


def standup_started() -> MessageContent:
    return MessageContent(text="Let's go! 🚀")


def question_prompt(question: str, position: int, total: int) -> MessageContent:
    return MessageContent(
        text=f"**({position}/{total})** {question}",
        actions=(Action(label="Answer", action_id=ACTION_ANSWER, style="primary"),),
    )


def answered_question(question: str, position: int, total: int, response: str) -> MessageContent:
    return MessageContent(text=f"**({position}/{total})** {question}\n> {response}")


def standup_completed() -> MessageContent:
    return MessageContent(text="Thanks, that's all for today! ✅")


def standup_closed() -> MessageContent:
    return MessageContent(text="Today's standup is closed. See you next time! 👋")


# summary_prompt.format(standup_name=..., date=..., answers=...)
summary_prompt = '''
You are the facilitator of the asynchronous daily standup "{standup_name}" ({date}).
Below are the answers of every team member who took part today.

{answers}

### **Write the standup summary:**
- Start with one short sentence about the overall state of the team.
- Give every member a bullet with the gist of their update. Keep the member mention (e.g. <@123>) as written.
- Add a **Blockers** section if anyone reported a blocker or issue, otherwise leave it out.
- Use emoticons for readability, but stay concise. Do not invent anything that is not in the answers.
'''
