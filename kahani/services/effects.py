"""Deferred side effects produced by conversation decisions.

Effects are plain data. ``OutboxDispatcher`` executes them in order; nothing in
here talks to the network.
"""

from dataclasses import dataclass
from typing import Optional, Union
from uuid import UUID


@dataclass(frozen=True)
class SendText:
    to: str
    body: str
    best_effort: bool = False


@dataclass(frozen=True)
class SendTemplate:
    to: str
    name: str
    params: tuple[str, ...] = ()
    button_url_param: Optional[str] = None
    best_effort: bool = False


@dataclass(frozen=True)
class SendCallToAction:
    to: str
    body: str
    button_label: str
    url: str
    best_effort: bool = False


@dataclass(frozen=True)
class Pause:
    """Sequencing delay between two messages to the same person."""


@dataclass(frozen=True)
class ProcessVoiceNote:
    """Start the download/transcode/upload pipeline for a stored voice note."""

    trial_id: UUID
    question_index: int


Effect = Union[SendText, SendTemplate, SendCallToAction, Pause, ProcessVoiceNote]

SEND_EFFECTS = (SendText, SendTemplate, SendCallToAction)
