import asyncio, logging
from typing import List

from .gateway import Gateway
from .models import Command, CommandScript, SpeakCommand

logger = logging.getLogger(__name__)


async def _synthesize_command(gateway: Gateway, index: int, command: SpeakCommand, language_code: str) -> SpeakCommand:
    try:
        audio = await gateway.synthesize(command.payload.text, language_code)
    except Exception as e:
        # One failed narration degrades to silent text; siblings are unaffected
        logger.warning(f"TTS synthesis failed for command index {index}. Sending command without audio: {e}")
        return command
    logger.info(f"TTS synthesis successful for command index {index}")
    payload = command.payload.model_copy(update={"audio": audio})
    return command.model_copy(update={"payload": payload})


async def synthesize_script(gateway: Gateway, commands: CommandScript, language_code: str) -> CommandScript:
    """
    Attach rendered audio to every narration command, concurrently.

    The returned list has the same length and order as `commands`; results
    are placed by position, never by completion order.
    """
    positions: List[int] = [
        i for i, c in enumerate(commands) if isinstance(c, SpeakCommand) and c.payload.text
    ]
    logger.info(f"Synthesizing {len(positions)} narration(s) out of {len(commands)} commands")
    synthesized = await asyncio.gather(
        *(_synthesize_command(gateway, i, commands[i], language_code) for i in positions)
    )
    result: List[Command] = list(commands)
    for i, command in zip(positions, synthesized):
        result[i] = command
    return result
