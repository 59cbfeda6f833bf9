from dataclasses import dataclass
from typing import List, Optional

from exceptions import MalformedInstruction

REFRAINING = "refraining"
ACTIONS = ("buy", "sell")


@dataclass(frozen=True)
class ParsedInstruction:
    subject: str
    action: str
    amount: Optional[str]
    unit: Optional[str] = None


def is_refraining(reply: str) -> bool:
    """
    The agent signals "no trades" by replying with the single word 'refraining'.
    Checked on the raw reply, before any trimming or line splitting.
    """
    return reply == REFRAINING


def parse_instruction(line: str) -> ParsedInstruction:
    """
    Parse one reply line of the form '<subject> <buy|sell> <amount> [<unit>]'.

    The subject is every word before the first standalone 'buy' or 'sell',
    joined back with single spaces. The amount is returned as text; checking
    that it is numeric is left to the reconciliation step.

    Raises:
        MalformedInstruction: if the line has no standalone 'buy' or 'sell' word.
    """
    words = line.split()

    for index, word in enumerate(words):
        if word in ACTIONS:
            rest = words[index + 1:]
            return ParsedInstruction(
                subject=" ".join(words[:index]),
                action=word,
                amount=rest[0] if rest else None,
                unit=rest[1] if len(rest) > 1 else None,
            )

    raise MalformedInstruction(f"No buy/sell action in line: {line!r}")


def parse_reply(reply: str) -> List[ParsedInstruction]:
    """Parse a full agent reply into instructions. Blank lines are ignored."""
    if is_refraining(reply):
        return []

    return [parse_instruction(line) for line in reply.split("\n") if line.strip()]
