import asyncio
import logging
import sys

from config import Settings, validate_environment
from exceptions import ConfigError, FeedUnavailable
from prompt import SYSTEM_PROMPT
from trading_agent import MarketWizard

logger = logging.getLogger(__name__)


def system_message(settings: Settings) -> dict:
    return {"role": "system", "content": SYSTEM_PROMPT.format(
        QUOTE_ASSET=settings.quote_asset, SELL_UNIT=settings.sell_unit)}


async def run_chat_mode(wizard: MarketWizard):
    """Talk to the agent directly. Type 'exit' to end."""
    print("Starting chat mode... Type 'exit' to end.")
    messages = [system_message(wizard.settings)]

    while True:
        user_input = await asyncio.to_thread(input, "\nPrompt: ")
        if user_input.lower() == "exit":
            break

        messages.append({"role": "user", "content": user_input})
        reply = await wizard.ask_agent(messages)
        messages.append({"role": "assistant", "content": reply})
        print(reply)
        print("-------------------")


async def main():
    settings = validate_environment()
    wizard = MarketWizard(settings)
    await wizard.initialize()
    await run_chat_mode(wizard)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (ConfigError, FeedUnavailable) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        pass
