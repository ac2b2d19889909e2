"""
Roots Secret Santa Bot - entry point

Loads config.env, wires logging (file, console, Discord log channel) and
starts an InteractionBot with the Secret Santa cog.
"""

import asyncio
import logging
import logging.handlers
import os
import signal
import sys
import time
from typing import Optional

import disnake
from disnake.ext import commands
from dotenv import load_dotenv

load_dotenv("config.env", override=True)

REQUIRED = object()

LEVEL_EMOJI = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🚨", "SUCCESS": "✅"}
DISCORD_MESSAGE_LIMIT = 2000


# ============ CONFIG ============
class Config:
    """Typed view over the environment. Attribute access is case-insensitive."""

    # name: (type, default, allowed range for ints)
    _fields = {
        "DISCORD_TOKEN": (str, REQUIRED, None),
        "DISCORD_GUILD_ID": (int, REQUIRED, None),
        "DISCORD_LOG_CHANNEL_ID": (int, REQUIRED, None),
        "DISCORD_MODERATOR_ROLE_ID": (int, REQUIRED, None),
        "DEBUG_MODE": (bool, False, None),
        "LOG_LEVEL": (str, "INFO", None),
        "LOG_FILE": (str, "bot.log", None),
        "MOD_LOG_CHANNEL_ID": (int, 0, None),
        "SECRET_SANTA_DATA_FILE": (str, "", None),
        "MATCH_MAX_ATTEMPTS": (int, 200, (1, 10000)),
    }

    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ
        self.data = {}
        self._load()

    def _load(self):
        missing = [
            key for key, (_, default, _) in self._fields.items()
            if default is REQUIRED and not self.environ.get(key)
        ]
        if missing:
            raise RuntimeError(f"Missing config: {missing}")

        for key, (cast_type, default, bounds) in self._fields.items():
            raw = self.environ.get(key)
            if raw is None or raw == "":
                self.data[key] = default
                continue
            self.data[key] = self._cast(key, cast_type, raw)
            if bounds:
                self._check_range(key, self.data[key], bounds)

    @staticmethod
    def _cast(key: str, cast_type, raw: str):
        raw = raw.strip()
        if cast_type is bool:
            return raw.lower() in ("1", "true", "yes")
        if cast_type is int:
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{key} must be an integer, got {raw!r}") from None
        return raw

    @staticmethod
    def _check_range(key: str, value: int, bounds):
        low, high = bounds
        if not low <= value <= high:
            # Logging isn't configured yet at this point
            print(f"Warning: {key}={value} is outside recommended range ({low}-{high})")

    def __getattr__(self, name: str):
        key = name.upper()
        if key in self.__dict__.get("data", {}):
            return self.data[key]
        raise AttributeError(f"Config missing: {key}")


# ============ DISCORD LOGGING ============
class DiscordLogHandler(logging.Handler):
    """
    Forward WARNING+ records to the Discord log channel.

    Records are queued by emit() and posted by a background task once a
    bot is attached. The same message is posted at most once per
    `repeat_window` seconds; when the queue is full new records are dropped.
    """

    def __init__(self, log_channel_id: int, bot=None, repeat_window: float = 60, max_queue: int = 50):
        super().__init__(level=logging.WARNING)
        self.log_channel_id = log_channel_id
        self.bot = bot
        self.repeat_window = repeat_window
        self.message_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.sender_task: Optional[asyncio.Task] = None
        self._recent = {}

    def attach(self, bot):
        """Start posting once the bot is connected"""
        self.bot = bot
        if self.sender_task is None:
            self.sender_task = asyncio.create_task(self._sender())

    def _seen_recently(self, key: str) -> bool:
        now = time.monotonic()
        self._recent = {k: t for k, t in self._recent.items() if now - t < self.repeat_window}
        if key in self._recent:
            return True
        self._recent[key] = now
        return False

    def format_for_discord(self, record) -> str:
        body = record.getMessage()
        header = f"{LEVEL_EMOJI.get(record.levelname, 'ℹ️')} **{record.levelname}** | {record.name}\n```\n"
        room = DISCORD_MESSAGE_LIMIT - len(header) - 8
        if len(body) > room:
            body = body[:room - 3] + "..."
        return f"{header}{body}\n```"

    def emit(self, record):
        if self.bot is None or not self.log_channel_id or record.levelno < self.level:
            return
        try:
            if self._seen_recently(f"{record.levelname}:{record.getMessage()[:50]}"):
                return
            self.message_queue.put_nowait(self.format_for_discord(record))
        except asyncio.QueueFull:
            pass
        except Exception:
            self.handleError(record)

    async def _sender(self):
        while True:
            try:
                message = await self.message_queue.get()
                channel = self.bot.get_channel(self.log_channel_id)
                if channel:
                    await channel.send(message)
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                break
            except disnake.HTTPException:
                continue

    def close(self):
        if self.sender_task:
            self.sender_task.cancel()
        super().close()


# ============ SETUP ============
def setup_logging(config: Config) -> tuple[logging.Logger, DiscordLogHandler]:
    """Configure the "bot" logger once; cogs log through its children"""
    logger = logging.getLogger("bot")
    logger.setLevel(logging.DEBUG if config.DEBUG_MODE else config.LOG_LEVEL.upper())

    existing = next((h for h in logger.handlers if isinstance(h, DiscordLogHandler)), None)
    if existing:
        return logger, existing

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = logging.handlers.RotatingFileHandler(
        config.LOG_FILE, maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    console_handler = logging.StreamHandler(sys.stdout)
    discord_handler = DiscordLogHandler(config.DISCORD_LOG_CHANNEL_ID)

    for handler in (file_handler, console_handler):
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.addHandler(discord_handler)
    return logger, discord_handler


def create_bot(config: Config, logger: logging.Logger, discord_handler: Optional[DiscordLogHandler]) -> commands.InteractionBot:
    intents = disnake.Intents.default()
    intents.members = True  # needed to resolve moderator roles
    bot = commands.InteractionBot(intents=intents, test_guilds=[config.DISCORD_GUILD_ID])
    bot.config = config
    bot.logger = logger
    bot.ready_once = False

    async def send_to_discord_log(message: str, level: str = "INFO"):
        """Post a status line to the log channel (no-op until the bot is ready)"""
        if not bot.ready_once:
            return
        channel = bot.get_channel(config.DISCORD_LOG_CHANNEL_ID)
        if channel is None:
            return
        text = f"{LEVEL_EMOJI.get(level, 'ℹ️')} **{level}** | {message}"
        if len(text) > DISCORD_MESSAGE_LIMIT:
            text = text[:DISCORD_MESSAGE_LIMIT - 3] + "..."
        try:
            await channel.send(text)
        except disnake.HTTPException as e:
            logger.debug(f"Failed to send Discord log message: {e}")

    bot.send_to_discord_log = send_to_discord_log

    @bot.event
    async def on_ready():
        if bot.ready_once:
            logger.info("Session re-established")
            return
        bot.ready_once = True
        logger.info(f"Logged in as {bot.user} ({len(bot.guilds)} guild(s))")
        if discord_handler:
            discord_handler.attach(bot)
        await send_to_discord_log(f"🎄 **Secret Santa bot online** | {bot.user.name}", "SUCCESS")

    @bot.event
    async def on_disconnect():
        logger.warning("Bot disconnected from Discord")

    @bot.event
    async def on_resumed():
        logger.info("Bot reconnected to Discord")

    @bot.event
    async def on_error(event, *args, **kwargs):
        logger.error(f"Unhandled error in {event}", exc_info=True)

    return bot


async def graceful_shutdown(bot, logger: logging.Logger):
    """Unload cogs (flushes Secret Santa state) and close the connection"""
    logger.info("Shutting down...")
    for name in list(bot.cogs):
        try:
            bot.remove_cog(name)
        except Exception as e:
            logger.debug(f"Cog unload error for {name}: {e}")
    try:
        await bot.close()
    except Exception as e:
        logger.debug(f"Bot close error: {e}")


def load_cogs(bot, logger: logging.Logger, extensions=("cogs.SecretSanta_cog",)) -> int:
    """Load extensions and return how many loaded"""
    loaded = 0
    for ext in extensions:
        try:
            bot.load_extension(ext)
        except Exception as e:
            logger.error(f"Failed to load {ext}: {e}", exc_info=True)
            continue
        logger.info(f"Loaded {ext}")
        loaded += 1
    return loaded


def main():
    try:
        config = Config()
    except (RuntimeError, ValueError) as e:
        print(f"Fatal: {e}")
        sys.exit(1)

    logger, discord_handler = setup_logging(config)
    bot = create_bot(config, logger, discord_handler)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            sys.exit(0)
        loop.create_task(graceful_shutdown(bot, logger))

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)

    if load_cogs(bot, logger) == 0:
        logger.critical("No cogs loaded!")
        sys.exit(1)

    logger.info("Starting bot...")
    max_retries = 5
    for attempt in range(1, max_retries + 1):
        try:
            bot.run(config.DISCORD_TOKEN)
            return
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
            return
        except disnake.LoginFailure as e:
            logger.critical(f"Login failed, check DISCORD_TOKEN: {e}")
            sys.exit(1)
        except Exception as e:
            logger.critical(f"Bot failed (attempt {attempt}/{max_retries}): {e}", exc_info=True)
            if attempt < max_retries:
                wait_time = min(30, 5 * attempt)
                logger.info(f"Retrying in {wait_time} seconds...")
                time.sleep(wait_time)
    logger.critical("Max retries exceeded. Bot will not restart.")


if __name__ == "__main__":
    main()
