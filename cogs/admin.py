import logging
from typing import cast

from discord import app_commands, Interaction
from discord.ext import commands

from cogs.chat import Chat
from utils.config import get_config

class Admin(commands.Cog):
    """Cog for admin commands like model switching."""
    def __init__(self, bot):
        self.bot = bot

    @property
    def chat_cog(self) -> Chat:
        return cast(Chat, self.bot.get_cog("Chat"))

    async def _switch_model_internal(self, model_name: str, user_id: int) -> str:
        """Switches the model the Chat cog answers with."""
        config = get_config()
        if user_id not in config["permissions"]["users"]["admin_ids"]:
            return "You don't have permission to change the model."

        if model_name not in config["models"]:
            return f"Model `{model_name}` not found in configuration."

        self.chat_cog.curr_model = model_name
        output = f"Model switched to: `{model_name}`"
        logging.info(f"{output} (by user {user_id})")
        return output

    @app_commands.command(name="model", description="View or switch the current model")
    async def model_command(self, interaction: Interaction, model: str) -> None:
        if model == self.chat_cog.curr_model:
            await interaction.response.send_message(f"Current model is already: `{model}`", ephemeral=True)
            return

        response_message = await self._switch_model_internal(model, interaction.user.id)
        await interaction.response.send_message(response_message, ephemeral=True)

    @model_command.autocomplete("model")
    async def model_autocomplete(self, interaction: Interaction, current_input: str):
        config = await interaction.client.loop.run_in_executor(None, get_config)
        curr_model = self.chat_cog.curr_model
        filtered_models = [m for m in config["models"] if current_input.lower() in m.lower()]
        choices = [
            app_commands.Choice(name=f"○ {m}", value=str(m)) for m in filtered_models if m != curr_model
        ][:24]
        if curr_model and curr_model in filtered_models:
            choices.append(app_commands.Choice(name=f"◉ {curr_model} (current)", value=str(curr_model)))
        return choices

async def setup(bot):
    await bot.add_cog(Admin(bot))
