#!/usr/bin/env python3
"""
MIDI events emitted by the BMS decoder.
Each event knows how to encode itself as raw MIDI track bytes.
"""

import struct
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple
from enum import Enum

from midiutil.MidiFile import writeVarLength, readVarLength


# Largest delta time a MIDI variable length quantity can hold (4 groups)
MAX_VARLEN = 0x0FFFFFFF
MAX_TEMPO_USEC = 0xFFFFFF  # Tempo events hold 3 bytes

CC_VOLUME = 0x07
CC_PAN = 0x0A

META_TEMPO = 0x51
META_END_OF_TRACK = 0x2F


class MidiEventType(Enum):
    """Types of MIDI events."""
    NOTE_ON = "note_on"
    NOTE_OFF = "note_off"
    CONTROLLER = "controller"
    PROGRAM_CHANGE = "program_change"
    TEMPO = "tempo"
    END_OF_TRACK = "end_of_track"


# Status nibble for channel voice messages
STATUS_BYTES = {
    MidiEventType.NOTE_ON: 0x90,
    MidiEventType.NOTE_OFF: 0x80,
    MidiEventType.CONTROLLER: 0xB0,
    MidiEventType.PROGRAM_CHANGE: 0xC0,
}


@dataclass
class MidiEvent:
    """A single MIDI event, without its delta time.

    Channel events carry a channel (0-15); meta events (tempo, end of
    track) have none. The meaning of `data` depends on the type:
    note events hold (pitch, velocity), controllers (controller, value),
    program changes (program,), tempo (usec_per_qnote,).
    """
    type: MidiEventType
    channel: Optional[int] = None
    data: Tuple[int, ...] = ()

    # Byte offset of the BMS opcode that produced this event
    offset: Optional[int] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_meta_event(self) -> bool:
        """Check if this is a meta event (not bound to a channel)."""
        return self.type in (MidiEventType.TEMPO, MidiEventType.END_OF_TRACK)

    def encode(self) -> bytes:
        """Encode as raw MIDI bytes (without the delta time)."""
        if self.type == MidiEventType.TEMPO:
            usec = self.data[0]
            if not 0 < usec <= MAX_TEMPO_USEC:
                raise ValueError(f"Tempo of {usec} usec per quarter note does not fit in 3 bytes")
            return bytes([0xFF, META_TEMPO, 0x03]) + struct.pack('>I', usec)[1:]
        if self.type == MidiEventType.END_OF_TRACK:
            return bytes([0xFF, META_END_OF_TRACK, 0x00])

        assert self.channel is not None, "channel events need a channel"
        status = STATUS_BYTES[self.type] | self.channel
        return bytes([status, *self.data])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        result: Dict[str, Any] = {'type': self.type.value}
        if self.channel is not None:
            result['channel'] = self.channel
        if self.type in (MidiEventType.NOTE_ON, MidiEventType.NOTE_OFF):
            result['note'], result['velocity'] = self.data
        elif self.type == MidiEventType.CONTROLLER:
            result['controller'], result['value'] = self.data
        elif self.type == MidiEventType.PROGRAM_CHANGE:
            result['program'] = self.data[0]
        elif self.type == MidiEventType.TEMPO:
            result['usec_per_qnote'] = self.data[0]
            result['bpm'] = self.metadata.get('bpm', 60_000_000 / self.data[0])
        if self.offset is not None:
            result['offset'] = self.offset
        return result


def encode_varlen(value: int) -> bytes:
    """Encode a delta time as a MIDI variable length quantity.

    Values are split into 7-bit groups, most significant first, with the
    high bit set on every group but the last. Zero encodes as b'\\x00'.
    """
    if not 0 <= value <= MAX_VARLEN:
        raise ValueError(f"Delta time {value} out of range (0-{MAX_VARLEN})")
    return bytes(writeVarLength(value))


def decode_varlen(buffer: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a variable length quantity.

    Returns:
        Tuple of (value, number of bytes read)
    """
    return readVarLength(offset, buffer)


# Helper functions for creating common event types

def make_note_on(channel: int, pitch: int, velocity: int,
                 offset: Optional[int] = None) -> MidiEvent:
    """Create a note on event."""
    return MidiEvent(MidiEventType.NOTE_ON, channel, (pitch, velocity), offset)


def make_note_off(channel: int, pitch: int, offset: Optional[int] = None) -> MidiEvent:
    """Create a note off event (release velocity 0)."""
    return MidiEvent(MidiEventType.NOTE_OFF, channel, (pitch, 0), offset)


def make_controller(channel: int, controller: int, value: int,
                    offset: Optional[int] = None) -> MidiEvent:
    """Create a controller change event."""
    return MidiEvent(MidiEventType.CONTROLLER, channel, (controller, value), offset)


def make_program_change(channel: int, program: int,
                        offset: Optional[int] = None) -> MidiEvent:
    """Create a program change event."""
    return MidiEvent(MidiEventType.PROGRAM_CHANGE, channel, (program,), offset)


def make_tempo(bpm: int, offset: Optional[int] = None) -> MidiEvent:
    """Create a tempo meta event.

    Args:
        bpm: Tempo in beats per minute (must be non-zero)
        offset: Byte offset in original data
    """
    event = MidiEvent(MidiEventType.TEMPO, None, (60_000_000 // bpm,), offset)
    event.metadata['bpm'] = bpm
    return event


def make_end_of_track(offset: Optional[int] = None) -> MidiEvent:
    """Create an end of track meta event."""
    return MidiEvent(MidiEventType.END_OF_TRACK, offset=offset)

