"""Speech adapter boundary and the console implementation used by the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Speak:
    text: str


@dataclass(frozen=True, slots=True)
class CancelSpeech:
    pass


@dataclass(frozen=True, slots=True)
class StartListening:
    pass


@dataclass(frozen=True, slots=True)
class StopListening:
    pass


SpeechCommand = Union[Speak, CancelSpeech, StartListening, StopListening]


class SpeechPort(Protocol):
    """Output side of a speech adapter."""

    def speak(self, text: str) -> None:
        ...

    def cancel(self) -> None:
        ...

    def start_listening(self) -> None:
        ...

    def stop_listening(self) -> None:
        ...


def apply_commands(port: SpeechPort, commands: List[SpeechCommand]) -> None:
    """Replay runner commands against a speech port, in order."""

    for command in commands:
        if isinstance(command, Speak):
            port.speak(command.text)
        elif isinstance(command, CancelSpeech):
            port.cancel()
        elif isinstance(command, StartListening):
            port.start_listening()
        elif isinstance(command, StopListening):
            port.stop_listening()


class ConsoleSpeech:
    """Prints interviewer lines instead of synthesizing audio.

    The campaign voice, when set, is shown next to the speaker name.
    """

    def __init__(
        self,
        *,
        speaker: str = "Interviewer",
        voice: Optional[str] = None,
        output: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._speaker = f"{speaker} ({voice})" if voice else speaker
        self.voice = voice
        self._output = output or print
        self._speaking: Optional[str] = None
        self.listening = False

    @property
    def speaking(self) -> Optional[str]:
        return self._speaking

    def speak(self, text: str) -> None:
        if self._speaking is not None:
            self.cancel()
        self._speaking = text
        self._output("")
        self._output(f"{self._speaker}: {text}")

    def cancel(self) -> None:
        if self._speaking is not None:
            logger.debug("Cancelling utterance: %s", self._speaking)
        self._speaking = None

    def start_listening(self) -> None:
        self.listening = True

    def stop_listening(self) -> None:
        self.listening = False


__all__ = [
    "CancelSpeech",
    "ConsoleSpeech",
    "Speak",
    "SpeechCommand",
    "SpeechPort",
    "StartListening",
    "StopListening",
    "apply_commands",
]
