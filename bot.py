# bot.py: Main entry point for the Taurus Discord bot
import asyncio
import logging
from utils.config import get_config, validate_config
from utils.http_client import httpx_client
from discord import app_commands
from discord.ext import commands
import discord

# --- LOGGING SETUP ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s: %(message)s",
)

# --- CONFIGURATION ---
config = get_config()
validate_config(config)

# Extensions loaded at startup, each registering its own listeners and commands
EXTENSIONS = ("cogs.chat", "cogs.ask", "cogs.admin")

# --- BOT INITIALIZATION ---
intents = discord.Intents.default()
intents.message_content = True
activity = discord.CustomActivity(name=(config.get("status_message", "Mention me to chat"))[:128])
bot = commands.Bot(intents=intents, activity=activity, command_prefix=commands.when_mentioned)

@bot.event
async def on_ready():
    """Called when the bot is ready and connected to Discord."""
    logging.info(f"Bot is ready! Logged in as {bot.user}")

    try:
        # A test guild gets instant command updates
        test_guild_id = config.get("test_guild_id")
        if test_guild_id:
            guild_obj = discord.Object(id=test_guild_id)
            bot.tree.copy_global_to(guild=guild_obj)
            await bot.tree.sync(guild=guild_obj)
            logging.info(f"Synced commands to test guild: {test_guild_id}")
        else:
            await bot.tree.sync()
            logging.info("Synced commands globally (updates can take up to an hour).")
    except Exception as e:
        logging.error(f"Failed to sync commands: {e}")

# --- CRASH PREVENTION ---
@bot.event
async def on_error(event: str, *args, **kwargs):
    logging.critical(f"🚫 Critical Error detected in event {event}", exc_info=True)

@bot.event
async def on_command_error(ctx: commands.Context, error: commands.CommandError):
    # Mentions are chat messages, not prefix commands
    if isinstance(error, commands.CommandNotFound):
        return
    logging.error(f"Prefix command failed: {error}")

@bot.tree.error
async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    # Cooldowns are answered by the cog that owns the command
    if isinstance(error, app_commands.CommandOnCooldown):
        return
    logging.critical(f"🚫 Critical Error detected in command {interaction.command and interaction.command.name}", exc_info=error)

def handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict):
    logging.critical(f"🚫 Critical Error detected: {context.get('message')}", exc_info=context.get("exception"))

# --- LOAD COGS ---
async def load_cogs():
    for extension in EXTENSIONS:
        await bot.load_extension(extension)

# --- MAIN EXECUTION ---
async def main():
    asyncio.get_running_loop().set_exception_handler(handle_loop_exception)
    try:
        await load_cogs()
        await bot.start(config["bot_token"])
    except discord.LoginFailure:
        logging.critical("Failed to log in. Please check your 'bot_token' in the config file.")
    except Exception:
        logging.critical("An unexpected error occurred during bot startup.", exc_info=True)
    finally:
        await httpx_client.aclose()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Bot shutting down.")
    except Exception as e:
        logging.critical(f"An error occurred outside the main bot loop: {e}", exc_info=True)
