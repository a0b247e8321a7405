import asyncio
import logging
import re
from typing import Optional

import discord
import httpx
from discord.ext import commands

from utils.config import get_config, gemini_api_key
from utils.http_client import httpx_client
from utils.models import generate_response, is_gemini_model
from utils.responses import handle_model_error, handle_response, invalid_api_key_embed
from utils.thread_history import DEFAULT_MAX_DEPTH, DeletionMarker, ThreadContext, fetch_thread_messages

EMBED_COLOR_LOADING = discord.Color.blurple()
MAX_TEXT = 100000
MAX_IMAGES = 5

def loading_embed() -> discord.Embed:
    return discord.Embed(title="⌛ Generating response...", color=EMBED_COLOR_LOADING)

class Chat(commands.Cog):
    """Cog for answering mentions, using the reply chain as conversation history."""
    def __init__(self, bot):
        self.bot = bot
        self.curr_model = None

    @commands.Cog.listener()
    async def on_ready(self):
        config = get_config()
        self.curr_model = self.curr_model or next(iter(config["models"]))
        logging.info("Chat Cog ready. Current model: %s", self.curr_model)

    async def check_api_key(self, config: dict, *, message: Optional[discord.Message] = None,
                            interaction: Optional[discord.Interaction] = None) -> bool:
        """Replies with a notice and returns False when the Gemini key is unusable."""
        if not is_gemini_model(self.curr_model):
            return True
        if (embed := invalid_api_key_embed(gemini_api_key(config))) is None:
            return True
        if interaction is not None:
            await interaction.response.send_message(embed=embed)
        else:
            await message.reply(embed=embed, silent=True)
        return False

    async def generate_reply(self, config: dict, loading_msg: discord.Message, question: str, requester_id: int,
                             context: ThreadContext, quoted_msg: Optional[discord.Message] = None,
                             images: Optional[list[dict]] = None) -> None:
        """Runs one request, re-issuing it after quota errors up to `quota_retries` times."""
        retries_left = config.get("quota_retries", 1)
        while True:
            try:
                response_text = await generate_response(config, self.curr_model, context.turns, question, images or [])
                await handle_response(response_text, loading_msg, requester_id, context.marker, quoted_msg)
                return
            except Exception as err:
                logging.exception("Error while generating model response")
                quota_error = await handle_model_error(err, loading_msg)
                if not quota_error or retries_left <= 0:
                    return
                retries_left -= 1
                logging.info(f"Retrying request after quota error (requester ID: {requester_id})")
                await loading_msg.edit(content=None, embeds=[loading_embed()])

    async def _download_attachments(self, message: discord.Message, config: dict) -> tuple[str, list[dict]]:
        max_images = config.get("max_images", MAX_IMAGES)
        good_attachments = [att for att in message.attachments if att.content_type and any(att.content_type.startswith(x) for x in ("text", "image"))]
        attachment_responses = await asyncio.gather(*[httpx_client.get(att.url) for att in good_attachments])
        for resp in attachment_responses:
            resp.raise_for_status()
        texts = [resp.text for att, resp in zip(good_attachments, attachment_responses) if att.content_type.startswith("text")]
        images = [
            dict(mime_type=att.content_type, data=resp.content)
            for att, resp in zip(good_attachments, attachment_responses)
            if att.content_type.startswith("image")
        ]
        return "\n".join(texts), images[:max_images]

    def _strip_bot_mention(self, content: str) -> str:
        return re.sub(rf"<@!?{self.bot.user.id}>\s*", "", content, count=1).strip()

    @commands.Cog.listener()
    async def on_message(self, new_msg: discord.Message):
        # Ignore slash commands and bot messages
        if new_msg.author.bot or new_msg.content.startswith('/'):
            return
        if new_msg.channel.type != discord.ChannelType.private and self.bot.user not in new_msg.mentions:
            return
        current_config = await asyncio.to_thread(get_config)
        if not await self._is_message_authorized(new_msg, current_config):
            return
        self.curr_model = self.curr_model or next(iter(current_config["models"]))
        if not await self.check_api_key(current_config, message=new_msg):
            return

        context = await fetch_thread_messages(new_msg, self.bot.user.id, max_depth=current_config.get("max_messages", DEFAULT_MAX_DEPTH))
        logging.info(f"Message received (user ID: {new_msg.author.id}, attachments: {len(new_msg.attachments)}, conversation length: {len(context.turns)}, marker: {context.marker.value}):\n{new_msg.content}")

        loading_msg = await new_msg.reply(embed=loading_embed(), silent=True)
        question = self._strip_bot_mention(new_msg.content)
        try:
            attachment_text, images = await self._download_attachments(new_msg, current_config)
        except httpx.HTTPError as err:
            logging.exception("Error fetching attachments")
            await handle_model_error(err, loading_msg)
            return
        if attachment_text:
            question = "\n".join(filter(None, (question, attachment_text)))
        question = question[:current_config.get("max_text", MAX_TEXT)]
        await self.generate_reply(current_config, loading_msg, question, new_msg.author.id, context, images=images)

    async def answer_interaction(self, interaction: discord.Interaction, question: str,
                                 marker: DeletionMarker = DeletionMarker.SLASH_COMMAND,
                                 quoted_msg: Optional[discord.Message] = None) -> None:
        """Shared path for slash commands, modals and context menus. Interactions carry no reply chain."""
        current_config = await asyncio.to_thread(get_config)
        self.curr_model = self.curr_model or next(iter(current_config["models"]))
        if not await self.check_api_key(current_config, interaction=interaction):
            return
        logging.info(f"Interaction received (user ID: {interaction.user.id}, marker: {marker.value}):\n{question}")
        await interaction.response.send_message(embed=loading_embed())
        loading_msg = await interaction.original_response()
        context = ThreadContext(turns=[], marker=marker)
        await self.generate_reply(current_config, loading_msg, question, interaction.user.id, context, quoted_msg=quoted_msg)

    async def _is_message_authorized(self, message: discord.Message, config: dict) -> bool:
        is_dm = message.channel.type == discord.ChannelType.private
        permissions = config["permissions"]
        author = message.author
        user_is_admin = author.id in permissions["users"]["admin_ids"]
        (allowed_user_ids, blocked_user_ids) = (permissions["users"]["allowed_ids"], permissions["users"]["blocked_ids"])
        (allowed_role_ids, blocked_role_ids) = (permissions["roles"]["allowed_ids"], permissions["roles"]["blocked_ids"])
        role_ids = {role.id for role in getattr(author, "roles", [])}
        allow_all_users_or_roles = not allowed_user_ids and (is_dm or not allowed_role_ids)
        is_good_user = user_is_admin or allow_all_users_or_roles or author.id in allowed_user_ids or any(id in allowed_role_ids for id in role_ids)
        is_bad_user = not is_good_user or author.id in blocked_user_ids or any(id in blocked_role_ids for id in role_ids)
        (allowed_channel_ids, blocked_channel_ids) = (permissions["channels"]["allowed_ids"], permissions["channels"]["blocked_ids"])
        channel_ids = {message.channel.id, getattr(message.channel, "parent_id", None), getattr(message.channel, "category_id", None)}
        channel_ids.discard(None)
        allow_all_channels = not allowed_channel_ids
        is_good_channel = user_is_admin or (config.get("allow_dms") and is_dm) or (allow_all_channels or any(id in allowed_channel_ids for id in channel_ids))
        is_bad_channel = not is_good_channel or any(id in blocked_channel_ids for id in channel_ids)
        return not (is_bad_user or is_bad_channel)

async def setup(bot):
    await bot.add_cog(Chat(bot))
