import re

# Discord rejects messages longer than this
DISCORD_MESSAGE_LIMIT = 2000


def mention(member_id: str) -> str:
    return f"<@{member_id}>"


def split_text_smart(text: str, max_length: int = DISCORD_MESSAGE_LIMIT) -> list:
    """
    Splits a given text into sections of up to max_length characters,
    preserving paragraph boundaries when possible.

    :param text: The input text to be split.
    :param max_length: The maximum allowed length per section.
    :return: A list of text sections.
    """
    if len(text) <= max_length:
        return [text]

    # Paragraph separators are kept so the sections join back to the original text
    paragraphs = re.split(r'(\n\n+)', text)
    sections = []
    current_section = ""

    for part in paragraphs:
        if len(current_section) + len(part) <= max_length:
            current_section += part
            continue

        if current_section:
            sections.append(current_section)
            current_section = ""
        if len(part) > max_length:
            chunks = [part[i: i + max_length] for i in range(0, len(part), max_length)]
            sections.extend(chunks[:-1])
            current_section = chunks[-1]
        else:
            current_section = part

    if current_section:
        sections.append(current_section)

    return sections
