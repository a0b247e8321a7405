from typing import cast

import discord
from discord import app_commands, Interaction
from discord.ext import commands

from cogs.chat import Chat
from utils.config import get_config
from utils.thread_history import DeletionMarker

ASK_COOLDOWN_SECONDS = 5.0

def ask_cooldown(interaction: Interaction) -> app_commands.Cooldown:
    config = get_config()
    return app_commands.Cooldown(1, config.get("ask_cooldown_seconds", ASK_COOLDOWN_SECONDS))

class AskModal(discord.ui.Modal, title="Ask Taurus"):
    """Modal for prompts too long to type comfortably into a slash command option."""
    prompt = discord.ui.TextInput(label="Prompt", style=discord.TextStyle.paragraph, max_length=4000)

    def __init__(self, chat_cog: Chat):
        super().__init__()
        self.chat_cog = chat_cog

    async def on_submit(self, interaction: Interaction) -> None:
        await self.chat_cog.answer_interaction(interaction, self.prompt.value)

class Ask(commands.Cog):
    """Cog for slash command, modal and context menu entry points."""
    def __init__(self, bot):
        self.bot = bot
        self.ask_menu = app_commands.ContextMenu(name="Ask Taurus", callback=self.ask_message)
        self.bot.tree.add_command(self.ask_menu)

    async def cog_unload(self) -> None:
        self.bot.tree.remove_command(self.ask_menu.name, type=self.ask_menu.type)

    @property
    def chat_cog(self) -> Chat:
        return cast(Chat, self.bot.get_cog("Chat"))

    @app_commands.command(name="ask", description="Ask Taurus a question")
    @app_commands.describe(prompt="What to ask")
    @app_commands.checks.dynamic_cooldown(ask_cooldown, key=lambda i: i.user.id)
    @app_commands.allowed_contexts(dms=True, guilds=True, private_channels=True)
    async def ask_command(self, interaction: Interaction, prompt: str) -> None:
        await self.chat_cog.answer_interaction(interaction, prompt)

    @app_commands.command(name="ask-long", description="Ask Taurus a longer question in a form")
    @app_commands.checks.dynamic_cooldown(ask_cooldown, key=lambda i: i.user.id)
    @app_commands.allowed_contexts(dms=True, guilds=True, private_channels=True)
    async def ask_long_command(self, interaction: Interaction) -> None:
        await interaction.response.send_modal(AskModal(self.chat_cog))

    @app_commands.allowed_contexts(dms=True, guilds=True, private_channels=True)
    async def ask_message(self, interaction: Interaction, message: discord.Message) -> None:
        if not message.content:
            await interaction.response.send_message("That message has no text to respond to.", ephemeral=True)
            return
        await self.chat_cog.answer_interaction(interaction, message.content, marker=DeletionMarker.NONE, quoted_msg=message)

    async def cog_app_command_error(self, interaction: Interaction, error: app_commands.AppCommandError) -> None:
        if isinstance(error, app_commands.CommandOnCooldown):
            await interaction.response.send_message(f"⏱️ Slow down! Try again in {error.retry_after:.1f}s.", ephemeral=True)

async def setup(bot):
    await bot.add_cog(Ask(bot))
