"""Rule-based automated replies to inbound WhatsApp messages."""

import re

GREETING = "Hello! Thanks for reaching out. How can I help you today?"
PRICING = "I'd be happy to help you with pricing information. Let me connect you with our team for detailed pricing."
INFORMATION = "I'll provide you with more information. What specifically would you like to know about?"
SCHEDULING = "Great! I can help you schedule a meeting. What time works best for you?"
HELP = "I'm here to help! Please let me know what you need assistance with."
FIRST_CONTACT = (
    "Thanks for your message! We'll get back to you shortly. "
    "In the meantime, feel free to let us know how we can help."
)

# First matching rule wins
KEYWORD_RULES = [
    (re.compile(r"\b(hello|hi|hey)\b"), GREETING),
    (re.compile(r"\b(price|prices|pricing|cost|costs)\b|\bhow much\b"), PRICING),
    (re.compile(r"\b(info|information|details)\b"), INFORMATION),
    (re.compile(r"\b(schedule|meeting|appointment)\b"), SCHEDULING),
    (re.compile(r"\b(help|support)\b"), HELP),
]


def automated_reply(text: str | None, conversation_message_count: int) -> str | None:
    """Pick a reply for `text`, or None when the message needs a human."""
    content = (text or "").lower().strip()
    for pattern, reply in KEYWORD_RULES:
        if pattern.search(content):
            return reply
    if conversation_message_count == 0:
        return FIRST_CONTACT
    return None
