# -----------------------------------------------------------------------------
# responses.py: Renders model results and failures into the loading message.
# Every function here edits that one message in place.
# -----------------------------------------------------------------------------
import asyncio
from dataclasses import dataclass
import logging
import re
from typing import Optional

import discord

from utils.thread_history import DeletionMarker, RESPONSE_FOOTER_PREFIX


# --- CONSTANTS ---
MAX_DISCORD_MESSAGE_LENGTH = 2000
TRUNCATED_RESPONSE_LENGTH = 1936
TRUNCATION_NOTICE = "... \n\n*Response was cut short due to Discord's character limit of 2000*"
MAX_FOOTER_LENGTH = 2030
MENTION_REGEX = re.compile(r"<@&?\d+>")
QUOTA_COUNTDOWN_SECONDS = 10
MIN_API_KEY_LENGTH = 4

EMBED_COLOR_ERROR = discord.Color.red()
EMBED_COLOR_INFO = discord.Color.blue()
EMBED_COLOR_NOTICE = discord.Color.orange()

MARKER_FOOTERS = {
    DeletionMarker.THREAD_DELETED: "A message has been deleted/is not accessible in the reply thread, Taurus does not know the past reply thread history.",
    DeletionMarker.SLASH_COMMAND: "Reply thread history not accessible, utilize history by mentioning me to chat instead.",
    DeletionMarker.CHAIN_TRUNCATED: "Reply thread history was too long, Taurus only knows the most recent part of it.",
}


@dataclass(frozen=True)
class ErrorNotice:
    title: str
    description: str
    color: discord.Color = EMBED_COLOR_ERROR
    quota_error: bool = False

    def to_embed(self) -> discord.Embed:
        return discord.Embed(title=self.title, description=self.description, color=self.color)


# Keyed by a signature that must appear in the error message
ERROR_NOTICES = {
    "Candidate was blocked due to SAFETY": ErrorNotice(
        title="⚠️ An Error Occurred",
        description="> *The response was blocked due to **SAFETY**.* \n- *Result based on your input. Safety Blocking may not be 100% correct.*",
    ),
    "User location is not supported for the API use": ErrorNotice(
        title="⚠️ An Error Occurred",
        description="> *The user location is not supported for Gemini API use. Please contact the Developers.*",
    ),
    "Resource has been exhausted (e.g. check quota)": ErrorNotice(
        title="⚠️ An Error Occurred",
        description="There are a lot of requests at the moment. Please try again later, or in a few minutes. \n▸ *If this issue persists after a few minutes, please contact the Developers.* \n - *We are aware of these issues and apologize for the inconvenience.* \n> - Token Limit for this minute has been reached.",
        quota_error=True,
    ),
    "Error code: 429": ErrorNotice(
        title="⚠️ An Error Occurred",
        description="There are a lot of requests at the moment. Please try again later, or in a few minutes. \n▸ *If this issue persists after a few minutes, please contact the Developers.*",
        quota_error=True,
    ),
    "Cannot send an empty message": ErrorNotice(
        title="⚠️ An Error Occurred",
        description="An error occurred while processing your request. Please try again later, or in a few minutes. \n▸ *If this issue persists, please contact the Developers.* \n> - Generated response may be too long. *(Fix this by specifying for the generated response to be smaller, e.g. 10 Lines)*\n> - Token Limit for this minute may have been reached.",
    ),
    "An internal error has occurred": ErrorNotice(
        title="⚠️ An Error Occurred",
        description="An error occurred while processing your request. This error originated from Google's side, not ours.  \n▸ *If this issue persists, please contact the Developers.* \n> - Please retry and make another request.",
    ),
}

DEFAULT_ERROR_NOTICE = ErrorNotice(
    title="⚠️ An Error Occurred",
    description="An unknown error occurred while processing your request. Please try again later, or in a few minutes. \n▸ *If this issue persists, please contact the Developers.*\n> - Token Limit for this minute may have been reached.",
)


# --- ERRORS ---
def match_error_notice(err: BaseException) -> ErrorNotice:
    message = str(err)
    for signature, notice in ERROR_NOTICES.items():
        if signature in message:
            return notice
    return DEFAULT_ERROR_NOTICE

async def handle_model_error(err: BaseException, loading_msg: discord.Message) -> bool:
    """
    Shows the notice matching `err` on the loading message.
    Quota errors get a visible countdown before returning True, which tells
    the caller it may re-issue the request.
    """
    notice = match_error_notice(err)
    embed = notice.to_embed()
    if notice.quota_error:
        for remaining in range(QUOTA_COUNTDOWN_SECONDS, 0, -1):
            embed.set_footer(text=f"⏱️ Retrying request in ({remaining})")
            await loading_msg.edit(content=None, embeds=[embed])
            await asyncio.sleep(1)
        return True
    await loading_msg.edit(content=None, embeds=[embed])
    return False


# --- SUCCESS ---
def truncate_response(text: str) -> str:
    if len(text) > MAX_DISCORD_MESSAGE_LENGTH:
        return text[:TRUNCATED_RESPONSE_LENGTH] + TRUNCATION_NOTICE
    return text

def find_foreign_mention(text: str, requester_id: int) -> Optional[str]:
    """First user/role mention in `text` that is not the requester, if any."""
    for match in MENTION_REGEX.finditer(text):
        if match.group(0) != f"<@{requester_id}>":
            return match.group(0)
    return None

def create_info_embeds(marker: DeletionMarker = DeletionMarker.NONE,
                       quoted_msg: Optional[discord.Message] = None) -> list[discord.Embed]:
    info_embeds = []
    if quoted_msg is not None:
        footer = f"{RESPONSE_FOOTER_PREFIX} {quoted_msg.author}\n\n{quoted_msg.content}"
        if len(footer) > MAX_FOOTER_LENGTH:
            footer = f"{footer[:MAX_FOOTER_LENGTH - 3]}..."
        info_embeds.append(discord.Embed(color=EMBED_COLOR_INFO).set_footer(text=footer))
    if footer := MARKER_FOOTERS.get(marker):
        info_embeds.append(discord.Embed(color=EMBED_COLOR_NOTICE).set_footer(text=footer))
    return info_embeds

async def handle_response(response_text: str, loading_msg: discord.Message, requester_id: int,
                          marker: DeletionMarker = DeletionMarker.NONE,
                          quoted_msg: Optional[discord.Message] = None) -> bool:
    """Edits the response into the loading message. Returns False if it was suppressed."""
    response_text = truncate_response(response_text)
    if (mention := find_foreign_mention(response_text, requester_id)) is not None:
        logging.warning(f"Suppressed response mentioning {mention} (requester ID: {requester_id})")
        ping_error = discord.Embed(
            title="⚠️ Response Cannot Be Sent",
            description="> *The generated message contains a mention of a Role or different User to the one that sent the original message/command.*",
            color=EMBED_COLOR_ERROR,
        )
        await loading_msg.edit(content=None, embeds=[ping_error])
        return False
    await loading_msg.edit(content=response_text, embeds=create_info_embeds(marker, quoted_msg))
    return True


# --- API KEY ---
def invalid_api_key_embed(api_key: Optional[str]) -> Optional[discord.Embed]:
    if api_key and len(api_key) >= MIN_API_KEY_LENGTH:
        return None
    return discord.Embed(
        title="⚠️ Invalid API Key",
        description="> **The API Key for Gemini is invalid or not provided.**",
        color=EMBED_COLOR_ERROR,
    )
