from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


# Matching is case-insensitive substring search over the model's free text. A reply can
# mean "handoff" without any of these (missed transfer) or contain one in passing
# (spurious transfer); both are known limits of phrase matching, not bugs.
DEFAULT_TRANSFER_PHRASES: tuple[str, ...] = (
    "let me connect you",
    "let me transfer you",
    "transfer you now",
    "connect you now",
    "i'll connect you",
    "i will connect you",
    "i'm going to connect you",
    "i am going to connect you",
    "i'll transfer you",
    "i will transfer you",
    "i'm going to transfer you",
    "i am going to transfer you",
    "i'm connecting you",
    "i am connecting you",
    "i'm transferring you",
    "i am transferring you",
    "connecting you now",
    "transferring you now",
    "i've transferred you",
    "i have transferred you",
)


@dataclass(frozen=True, slots=True)
class TransferDecision:
    transfer: bool
    transfer_number: Optional[str] = None
    matched_phrase: Optional[str] = None


NO_TRANSFER = TransferDecision(transfer=False)


class TransferPolicy(Protocol):
    def __call__(self, text: str) -> TransferDecision: ...

    def forced(self) -> TransferDecision: ...


class EndCallPolicy(Protocol):
    def __call__(self, text: str) -> bool: ...


def _find_phrase(text: str, phrases: tuple[str, ...]) -> Optional[str]:
    haystack = (text or "").lower()
    for phrase in phrases:
        if phrase and phrase.lower() in haystack:
            return phrase
    return None


@dataclass(frozen=True, slots=True)
class PhraseTransferPolicy:
    transfer_number: str
    phrases: tuple[str, ...] = DEFAULT_TRANSFER_PHRASES

    def __call__(self, text: str) -> TransferDecision:
        hit = _find_phrase(text, self.phrases)
        if hit is None or not self.transfer_number:
            return NO_TRANSFER
        return TransferDecision(transfer=True, transfer_number=self.transfer_number, matched_phrase=hit)

    def forced(self) -> TransferDecision:
        if not self.transfer_number:
            return NO_TRANSFER
        return TransferDecision(transfer=True, transfer_number=self.transfer_number)


@dataclass(frozen=True, slots=True)
class PhraseEndCallPolicy:
    phrases: tuple[str, ...] = ()

    def __call__(self, text: str) -> bool:
        return _find_phrase(text, self.phrases) is not None
