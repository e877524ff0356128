"""
MIDI output tracks and MIDI channel allocation.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from errors import ProtocolError
from format_base import PERCUSSION_CHANNEL
from midi_events import MidiEvent, encode_varlen


MAX_CHANNELS = 16


@dataclass
class Track:
    """One MIDI output track.

    The buffer is append-only; each unit is a variable length delta time
    followed by the raw event bytes. Events are also kept as objects for
    the debug dumps.
    """
    index: int
    channel: Optional[int] = None  # None for the meta (conductor) track
    buffer: bytearray = field(default_factory=bytearray)
    events: List[Tuple[int, MidiEvent]] = field(default_factory=list)
    start_offset: Optional[int] = None  # BMS offset of the track body
    closed: bool = False

    def is_meta_track(self) -> bool:
        """Check if this is the conductor track (no channel)."""
        return self.channel is None and self.start_offset is None

    def append(self, delta: int, event: MidiEvent) -> None:
        """Append an event with its delta time (in ticks)."""
        if self.closed:
            raise ProtocolError(f"Track {self.index} is already closed", event.offset)
        if not event.is_meta_event():
            if self.channel is None:
                raise ProtocolError(f"{event.type.name} event outside of a track", event.offset)
            event.channel = self.channel
        self.buffer += encode_varlen(delta)
        self.buffer += event.encode()
        self.events.append((delta, event))

    def close(self) -> None:
        self.closed = True

    def __len__(self) -> int:
        """Return encoded length in bytes."""
        return len(self.buffer)


class ChannelAllocator:
    """Assigns MIDI channels 0-15 to tracks.

    Channel 9 is percussion only, so it is handed out last. A channel stays
    taken for the rest of the conversion once assigned.
    """

    def __init__(self):
        self.mask = 0

    def in_use(self, channel: int) -> bool:
        return bool(self.mask & (1 << channel))

    def acquire(self) -> int:
        """Take the first free channel, avoiding the percussion channel."""
        for channel in range(MAX_CHANNELS):
            if channel != PERCUSSION_CHANNEL and not self.in_use(channel):
                self.mask |= 1 << channel
                return channel
        # If we have no choice, use channel 9 if it's available
        if not self.in_use(PERCUSSION_CHANNEL):
            self.mask |= 1 << PERCUSSION_CHANNEL
            return PERCUSSION_CHANNEL
        raise ProtocolError(f"Cannot use more than {MAX_CHANNELS} MIDI channels")

    def release(self, channel: int) -> None:
        self.mask &= ~(1 << channel)

    def force_percussion(self, track: Track) -> None:
        """Move a track to the percussion channel."""
        if track.channel == PERCUSSION_CHANNEL:
            return
        if self.in_use(PERCUSSION_CHANNEL):
            raise ProtocolError(
                f"Track {track.index} needs the percussion channel, "
                f"but channel {PERCUSSION_CHANNEL} is already in use")
        if track.channel is not None:
            self.release(track.channel)
        self.mask |= 1 << PERCUSSION_CHANNEL
        track.channel = PERCUSSION_CHANNEL
