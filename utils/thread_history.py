# -----------------------------------------------------------------------------
# thread_history.py: Rebuilds the conversation behind a Discord reply chain.
# The walk goes backward through message references, so every turn is
# prepended to keep the result oldest-first.
# -----------------------------------------------------------------------------
from dataclasses import dataclass, field
from enum import Enum
import logging
import re
from typing import Literal, Optional

import discord


# --- CONSTANTS ---
RESPONSE_FOOTER_PREFIX = "Response to message by"
FOOTER_PREFIXES = (RESPONSE_FOOTER_PREFIX, "A message has been deleted", "Reply thread history")
LINK_REGEX = re.compile(r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)")
USER_MENTION_REGEX = re.compile(r"<@\d+>\s*")
DEFAULT_MAX_DEPTH = 25


# --- DATA STRUCTURES ---
class DeletionMarker(Enum):
    """Why the reply thread history could not be fully reconstructed."""
    NONE = "none"
    THREAD_DELETED = "threadDeleted"
    SLASH_COMMAND = "slashCommand"
    CHAIN_TRUNCATED = "chainTruncated"


@dataclass(frozen=True)
class Turn:
    role: Literal["user", "model"]
    text: str

    def to_gemini(self) -> dict:
        return {"role": self.role, "parts": [{"text": self.text}]}

    def to_openai(self) -> dict:
        return {"role": "assistant" if self.role == "model" else "user", "content": self.text}


@dataclass
class ThreadContext:
    turns: list[Turn] = field(default_factory=list)
    marker: DeletionMarker = DeletionMarker.NONE


# --- HELPER FUNCTIONS ---
def footer_text(message: discord.Message) -> Optional[str]:
    """Footer text of the first embed, if there is one."""
    if not message.embeds:
        return None
    return message.embeds[0].footer.text

def is_invalid_original_message(original_msg: discord.Message, bot_id: int,
                                link_regex: re.Pattern = LINK_REGEX,
                                footer_prefixes: tuple[str, ...] = FOOTER_PREFIXES) -> bool:
    """
    Decides whether the message a new reply points at is unsafe to walk from.
    Only the bot's own messages start a chain. A bot message with embeds must
    either carry one of the known provenance footers or contain a link.
    """
    if original_msg.author.id != bot_id:
        return True
    if not original_msg.embeds:
        return False
    text = footer_text(original_msg)
    if text and text.startswith(footer_prefixes):
        return False
    return not link_regex.search(original_msg.content)

def _ends_walk(message: discord.Message, bot_id: int, link_regex: re.Pattern) -> bool:
    # A rendered bot answer already summarizes what came before it
    return message.author.id == bot_id and len(message.embeds) > 0 and not link_regex.search(message.content)

async def fetch_referenced_message(message: discord.Message) -> discord.Message:
    reference = message.reference
    return reference.cached_message or await message.channel.fetch_message(reference.message_id)


# --- RECONSTRUCTION ---
async def get_thread_messages(message: discord.Message, bot_id: int,
                              link_regex: re.Pattern = LINK_REGEX,
                              max_depth: Optional[int] = DEFAULT_MAX_DEPTH,
                              parent_msg: Optional[discord.Message] = None) -> tuple[list[Turn], bool]:
    """
    Walks the reply chain upward from `message` and returns (turns, truncated).
    `truncated` is set when `max_depth` fetches were made and the chain still
    continued. `parent_msg` is the already fetched message `message` replies to.
    Raises discord.HTTPException when a message in the chain is gone or unreadable.
    """
    turns: list[Turn] = []
    curr_msg = message
    depth = 0
    while curr_msg.reference is not None and not _ends_walk(curr_msg, bot_id, link_regex):
        if max_depth is not None and depth >= max_depth:
            return turns, True
        if depth == 0 and parent_msg is not None:
            curr_msg = parent_msg
        else:
            curr_msg = await fetch_referenced_message(curr_msg)
        depth += 1
        role = "model" if curr_msg.author.id == bot_id else "user"
        content = curr_msg.content

        if role == "user":
            content = USER_MENTION_REGEX.sub("", content, count=1)
        elif curr_msg.embeds:
            text = footer_text(curr_msg)
            if text and text.startswith(RESPONSE_FOOTER_PREFIX):
                # Footer layout: "Response to message by <author>\n\n<quoted message>"
                lines = text.split("\n")
                quoted = lines[2] if len(lines) > 2 else ""
                turns.insert(0, Turn(role, content))
                turns.insert(0, Turn("user", quoted))
                continue

        turns.insert(0, Turn(role, content))
    return turns, False

async def fetch_thread_messages(message: discord.Message, bot_id: int,
                                max_depth: Optional[int] = DEFAULT_MAX_DEPTH) -> ThreadContext:
    """Builds the history for a reply; any break in the chain discards it."""
    if message.reference is None:
        return ThreadContext()
    try:
        original_msg = await fetch_referenced_message(message)
        if is_invalid_original_message(original_msg, bot_id):
            return ThreadContext(marker=DeletionMarker.THREAD_DELETED)
        turns, truncated = await get_thread_messages(message, bot_id, max_depth=max_depth, parent_msg=original_msg)
    except (discord.NotFound, discord.HTTPException) as e:
        logging.warning(f"Reply chain of message {message.id} is broken ({e}), continuing without history")
        return ThreadContext(marker=DeletionMarker.THREAD_DELETED)
    if truncated:
        logging.info(f"Reply chain of message {message.id} truncated at {max_depth} messages")
        return ThreadContext(turns=turns, marker=DeletionMarker.CHAIN_TRUNCATED)
    return ThreadContext(turns=turns)
