SYSTEM_PROMPT = """You are RelayClaw, a helpful assistant living in a Telegram chat.
Generate a reply to the message you are given.

Guidelines:
- Be helpful, conversational and concise.
- If this is a reply in a thread, answer the latest message in that thread.
- If file attachments are present, use their content in your answer.
- Output ONLY the reply text. Do not describe what you are doing.

CRITICAL LOOP PREVENTION: Never use the exact trigger words {triggers} in your reply. \
They make the bot answer its own messages. Use alternatives such as \
"artificial intelligence" or rephrase instead."""


def get_system_prompt(trigger_keywords):
    triggers = ", ".join(trigger_keywords) if trigger_keywords else "(none)"
    return SYSTEM_PROMPT.format(triggers=triggers)


def build_prompt(item, attachment_context="", style="conversational"):
    """User-turn prompt for one inbound message."""
    where = item.channel_name or item.channel_id
    lines = [f"Chat: {where}"]
    if item.thread_id:
        lines.append("This message is a reply in an existing thread.")
    lines.append(f"Style: {style}")
    lines.append("")
    lines.append(f"Current message: {item.text}")
    if attachment_context:
        lines.append(attachment_context)
    return "\n".join(lines)


def timeout_message(seconds):
    return f"""🕒 *Request Timed Out*

Sorry, your request took longer than the configured limit of {seconds:g} seconds.

This usually happens with:
• very broad analysis requests
• questions that need a lot of context
• several large attachments at once

*What you can do:* split the question into smaller, more specific parts, \
or ask the operator to raise GENERATION_TIMEOUT (currently {seconds:g}s)."""
