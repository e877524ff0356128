"""
BMS sequence decoder.

Walks a BMS byte stream as an instruction sequence, following its control
flow (track start, subroutine call/return, track end) and building MIDI
tracks with correct delta times.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from errors import ProtocolError
from format_base import DRUM_KIT, PERCUSSION_CHANNEL, InstrumentConverter
from midi_events import (
    CC_PAN, CC_VOLUME, MAX_TEMPO_USEC, MAX_VARLEN, MidiEvent,
    make_note_on, make_note_off, make_controller, make_program_change,
    make_tempo, make_end_of_track
)
from track_buffer import ChannelAllocator, Track


STACK_LIMIT = 4  # Deepest subroutine nesting seen in the format
VOICE_COUNT = 8
DEFAULT_MAX_STEPS = 1_000_000


class ByteCursor:
    """Random access reader over the in-memory BMS data.

    `pos` acts as the program counter. Every byte read since the last
    `begin()` is kept in `trace` for the disassembly listing.
    """

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0
        self.trace = bytearray()

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def begin(self) -> None:
        self.trace = bytearray()

    def seek(self, offset: int) -> None:
        if not 0 <= offset <= len(self.data):
            raise ProtocolError(
                f"Jump target 0x{offset:X} outside of data (length 0x{len(self.data):X})")
        self.pos = offset

    def read(self, length: int) -> bytes:
        end = self.pos + length
        if end > len(self.data):
            raise ProtocolError(
                f"Unexpected end of data (needed {length} bytes at 0x{self.pos:X})")
        chunk = self.data[self.pos:end]
        self.pos = end
        self.trace += chunk
        return chunk

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_u16(self) -> int:
        return int.from_bytes(self.read(2), 'big')

    def read_u24(self) -> int:
        return int.from_bytes(self.read(3), 'big')

    def read_u32(self) -> int:
        return int.from_bytes(self.read(4), 'big')


@dataclass
class DecoderState:
    """Mutable state of one decoding run."""
    meta_track: Track
    current_track: Track
    tracks: List[Track] = field(default_factory=list)
    delay: int = 0  # Accumulated delay in ticks, consumed by the next event
    in_track: bool = False
    saved_pos: Optional[int] = None  # Meta stream position to resume after a track
    ticks_per_qnote: Optional[int] = None
    call_stack: List[int] = field(default_factory=list)
    voices: List[Optional[int]] = field(default_factory=lambda: [None] * VOICE_COUNT)
    channels: ChannelAllocator = field(default_factory=ChannelAllocator)
    warnings: List[str] = field(default_factory=list)
    disasm: List[str] = field(default_factory=list)
    steps: int = 0
    finished: bool = False

    def reset_voices(self) -> None:
        self.voices = [None] * VOICE_COUNT


@dataclass
class DecodeResult:
    """Outcome of decoding a BMS stream.

    In non-strict mode a failed decode still returns the tracks built so
    far, with the error stored in `error`.
    """
    tracks: List[Track]
    ticks_per_qnote: Optional[int]
    warnings: List[str] = field(default_factory=list)
    disasm: List[str] = field(default_factory=list)
    error: Optional[ProtocolError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def meta_track(self) -> Track:
        return self.tracks[0]


Handler = Callable[[DecoderState, ByteCursor, int, int], str]


class BmsDecoder:
    """Interpreter for BMS opcode streams."""

    OPCODE_NAMES = {
        0x80: 'Delay', 0x88: 'Delay (16-bit)',
        0x98: 'Unknown (track prologue)',
        0x9A: 'Pan', 0x9C: 'Volume', 0x9E: 'Unknown (pitch bend?)',
        0xA4: 'Instrument',
        0xAC: 'Unknown (track end?)', 0xAD: 'Unknown',
        0xC1: 'Track Start', 0xC4: 'Call Sub', 0xC6: 'Return From Sub',
        0xC8: 'Goto', 0xCB: 'Unknown', 0xCC: 'Unknown',
        0xD6: 'Unknown',
        0xE6: 'Unknown (track prologue)', 0xE7: 'Unknown (track prologue)',
        0xF4: 'Unknown',
        0xFD: 'Tempo', 0xFE: 'Ticks Per Quarter Note', 0xFF: 'End Of Track',
    }

    # Opcodes whose meaning is unknown; only their payload lengths are known
    SKIP_LENGTHS = {
        0x98: 2, 0xE6: 2, 0xE7: 2,  # seen near the start of tracks
        0x9E: 2,
        0xAD: 3,
        0xCB: 7,  # length is a best guess
        0xCC: 2,
        0xD6: 1, 0xF4: 1,
    }

    def __init__(self, data: bytes, instruments: Optional[InstrumentConverter] = None,
                 max_steps: int = DEFAULT_MAX_STEPS, verbose: bool = False):
        """Initialize with BMS data.

        Args:
            data: Complete BMS file contents
            instruments: Instrument id converter (identity mapping if omitted)
            max_steps: Emergency brake, abort after this many opcodes
            verbose: Print every decoded opcode as it is executed
        """
        self.data = bytes(data)
        self.instruments = instruments or InstrumentConverter()
        self.max_steps = max_steps
        self.verbose = verbose
        self.handlers = self._build_dispatch_table()

    def _build_dispatch_table(self) -> Dict[int, Handler]:
        handlers: Dict[int, Handler] = {}
        for opcode in range(0x80):
            handlers[opcode] = self._note_on
        for opcode in range(0x81, 0x88):
            handlers[opcode] = self._note_off
        for opcode in self.SKIP_LENGTHS:
            handlers[opcode] = self._skip
        handlers.update({
            0x80: self._delay_u8,
            0x88: self._delay_u16,
            0x9A: self._pan,
            0x9C: self._volume,
            0xA4: self._instrument,
            0xAC: self._unknown_ac,
            0xC1: self._track_start,
            0xC4: self._call,
            0xC6: self._return,
            0xC8: self._goto,
            0xFD: self._tempo,
            0xFE: self._ticks_per_qnote,
            0xFF: self._end_of_track,
        })
        return handlers

    def decode(self, strict: bool = True) -> DecodeResult:
        """Decode the whole stream.

        Args:
            strict: Raise ProtocolError on failure. If False, the error is
                returned in the result along with the partial tracks.

        Returns:
            DecodeResult with the meta track first, then one track per
            track start in decoding order
        """
        meta_track = Track(index=0)
        state = DecoderState(meta_track=meta_track, current_track=meta_track,
                             tracks=[meta_track])
        cursor = ByteCursor(self.data)
        error = None

        try:
            while not state.finished:
                self.step(state, cursor)
        except ProtocolError as e:
            if strict:
                raise
            error = e

        return DecodeResult(
            tracks=state.tracks,
            ticks_per_qnote=state.ticks_per_qnote,
            warnings=state.warnings,
            disasm=state.disasm,
            error=error,
        )

    def step(self, state: DecoderState, cursor: ByteCursor) -> None:
        """Execute the opcode at the current position."""
        state.steps += 1
        if state.steps > self.max_steps:
            raise ProtocolError(
                f"Emergency brake: more than {self.max_steps} opcodes decoded, "
                f"possible infinite loop", cursor.pos)
        if cursor.at_end():
            raise ProtocolError("Unexpected end of data", cursor.pos)

        offset = cursor.pos
        cursor.begin()
        opcode = cursor.read_u8()
        handler = self.handlers.get(opcode)
        if handler is None:
            raise ProtocolError(f"Unhandled BMS event 0x{opcode:X}", offset, opcode)

        try:
            detail = handler(state, cursor, opcode, offset)
        except ProtocolError as e:
            if e.offset is None:
                raise ProtocolError(e.message, offset, opcode) from e
            raise

        operands = ' '.join(f"{b:02X}" for b in cursor.trace[1:])
        name = self._opcode_name(opcode)
        line = f"  {offset:08X}:  {opcode:02X} {operands:<21s} {name}"
        if detail:
            line += f" {detail}"
        state.disasm.append(line)
        if self.verbose:
            print(line)

    def _opcode_name(self, opcode: int) -> str:
        if opcode < 0x80:
            return 'Note On'
        if 0x81 <= opcode <= 0x87:
            return 'Note Off'
        return self.OPCODE_NAMES.get(opcode, f"Op_{opcode:02X}")

    def _emit(self, state: DecoderState, track: Track, event: MidiEvent) -> None:
        """Append an event with the pending delay, then reset the delay."""
        if state.delay > MAX_VARLEN:
            raise ProtocolError(f"Delay {state.delay} exceeds the MIDI delta-time range")
        track.append(state.delay, event)
        state.delay = 0

    def _warn(self, state: DecoderState, message: str) -> None:
        state.warnings.append(message)
        print(f"WARNING: {message}", file=sys.stderr)

    def _require_channel(self, state: DecoderState, what: str) -> int:
        channel = state.current_track.channel
        if channel is None:
            raise ProtocolError(f"{what} outside of a track")
        return channel

    # Notes and delays

    def _note_on(self, state, cursor, opcode, offset) -> str:
        pitch = opcode
        voice = cursor.read_u8()
        volume = cursor.read_u8()
        channel = self._require_channel(state, "Note on")

        # Rough fit for drums; BMS drum notes do not follow the General MIDI kit
        if channel == PERCUSSION_CHANNEL:
            pitch -= 1
            if pitch < 0:
                raise ProtocolError("Percussion note 0 cannot be shifted down")
        if voice >= VOICE_COUNT:
            raise ProtocolError(f"Voice {voice} out of range (0-{VOICE_COUNT - 1})")
        if volume > 127:
            raise ProtocolError(f"Note velocity {volume} out of range")

        self._emit(state, state.current_track, make_note_on(channel, pitch, volume, offset))
        state.voices[voice] = pitch
        return f"pitch {pitch}, voice {voice}, volume {volume}"

    def _note_off(self, state, cursor, opcode, offset) -> str:
        voice = opcode & 7
        pitch = state.voices[voice]
        if pitch is None:
            raise ProtocolError(f"Note off for voice {voice} which is not playing")
        channel = self._require_channel(state, "Note off")

        self._emit(state, state.current_track, make_note_off(channel, pitch, offset))
        state.voices[voice] = None
        return f"voice {voice} (pitch {pitch})"

    def _delay_u8(self, state, cursor, opcode, offset) -> str:
        value = cursor.read_u8()
        state.delay += value
        return f"+{value} = {state.delay}"

    def _delay_u16(self, state, cursor, opcode, offset) -> str:
        value = cursor.read_u16()
        state.delay += value
        return f"+{value} = {state.delay}"

    # Controllers and instruments

    def _pan(self, state, cursor, opcode, offset) -> str:
        sub = cursor.read_u8()
        if sub != 0x03:
            cursor.read(2)
            return f"(unknown {sub:02X})"

        pan = cursor.read_u8()
        duration = cursor.read_u8()
        if pan > 127:
            raise ProtocolError(f"Pan value {pan} out of range")
        channel = self._require_channel(state, "Pan")
        self._emit(state, state.current_track, make_controller(channel, CC_PAN, pan, offset))
        return f"(set pan) pan = {pan}, duration = {duration}"

    def _volume(self, state, cursor, opcode, offset) -> str:
        sub = cursor.read_u8()
        if sub == 0x09:
            cursor.read(2)
            return "(vibrato?)"
        if sub != 0x00:
            cursor.read(2)
            return f"(unknown {sub:02X})"

        volume = cursor.read_u8()
        duration = cursor.read_u8()  # Purpose unknown
        if volume > 127:
            raise ProtocolError(f"Volume value {volume} out of range")
        channel = self._require_channel(state, "Volume")
        self._emit(state, state.current_track,
                   make_controller(channel, CC_VOLUME, volume, offset))
        return f"(set volume) vol = {volume}, duration = {duration}"

    def _instrument(self, state, cursor, opcode, offset) -> str:
        sub = cursor.read_u8()
        if sub == 0x20:
            bank = cursor.read_u8()
            return f"(set bank) {bank}"
        if sub != 0x21:
            # TODO: work out what sub-opcode 0x07 selects
            cursor.read(1)
            return f"({sub})"

        inst_id = cursor.read_u8()
        program = self.instruments.convert(inst_id)
        name = self.instruments.get_instrument_name(inst_id)
        track = state.current_track
        self._require_channel(state, "Instrument change")

        if program == DRUM_KIT:
            state.channels.force_percussion(track)
            program = 0
        elif program > 127:
            raise ProtocolError(
                f"Instrument {inst_id} has no General MIDI program "
                f"(converted to {program}); add it to the instrument list")

        self._emit(state, track, make_program_change(track.channel, program, offset))
        return f"(set instrument) {inst_id} -> {program} ({name}) on channel {track.channel}"

    # Control flow

    def _track_start(self, state, cursor, opcode, offset) -> str:
        if state.in_track:
            raise ProtocolError("Track start inside a track")
        cursor.read_u8()
        track_offset = cursor.read_u24()
        state.saved_pos = cursor.pos
        cursor.seek(track_offset)

        track = Track(index=len(state.tracks), channel=state.channels.acquire(),
                      start_offset=track_offset)
        state.tracks.append(track)
        state.current_track = track
        state.in_track = True
        state.reset_voices()
        return f"track {track.index} @ 0x{track_offset:X}, channel {track.channel}"

    def _call(self, state, cursor, opcode, offset) -> str:
        dest = cursor.read_u32()
        if len(state.call_stack) >= STACK_LIMIT:
            raise ProtocolError("Call stack limit reached")
        state.call_stack.append(cursor.pos)
        cursor.seek(dest)
        return f"-> 0x{dest:X}"

    def _return(self, state, cursor, opcode, offset) -> str:
        if not state.call_stack:
            raise ProtocolError("Attempted to return outside of subroutine")
        dest = state.call_stack.pop()
        cursor.seek(dest)
        return f"-> 0x{dest:X}"

    def _goto(self, state, cursor, opcode, offset) -> str:
        # MIDI files cannot loop, so the jump is not taken
        target = cursor.read_u32()
        return f"0x{target:X} (ignored)"

    def _unknown_ac(self, state, cursor, opcode, offset) -> str:
        operands = cursor.read(3)
        if operands[2] == 0:
            return "(forced end) " + self._end_of_track(state, cursor, opcode, offset)
        return ""

    def _end_of_track(self, state, cursor, opcode, offset) -> str:
        track = state.current_track
        self._emit(state, track, make_end_of_track(offset))
        track.close()

        if not state.in_track:
            state.finished = True
            return "(end of sequence)"

        cursor.seek(state.saved_pos)
        state.in_track = False
        state.current_track = state.meta_track
        state.reset_voices()
        return f"track {track.index}"

    # Meta events

    def _tempo(self, state, cursor, opcode, offset) -> str:
        bpm = cursor.read_u16()
        if state.in_track:
            self._warn(state, f"Setting tempo within a track is not supported (0x{offset:X})")
            return f"{bpm} bpm (ignored)"
        if bpm == 0:
            raise ProtocolError("Tempo of 0 bpm")
        if 60_000_000 // bpm > MAX_TEMPO_USEC:
            raise ProtocolError(f"Tempo of {bpm} bpm is too slow for a MIDI tempo event")
        event = make_tempo(bpm, offset)
        self._emit(state, state.meta_track, event)
        return f"{bpm} bpm ({event.data[0]} usec per quarter note)"

    def _ticks_per_qnote(self, state, cursor, opcode, offset) -> str:
        value = cursor.read_u16()
        if state.ticks_per_qnote is not None:
            self._warn(state, f"Ticks per quarter note already set. Ignoring {value} (0x{offset:X})")
            return f"{value} (ignored)"
        if value == 0:
            self._warn(state, f"Ignoring ticks per quarter note of 0 (0x{offset:X})")
            return "0 (ignored)"
        state.ticks_per_qnote = value
        return f"{value}"

    def _skip(self, state, cursor, opcode, offset) -> str:
        cursor.read(self.SKIP_LENGTHS[opcode])
        return ""
