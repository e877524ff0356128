#!/usr/bin/env python3
"""Test the BMS decoder against hand-built sequences."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

from decoder import BmsDecoder, ByteCursor, STACK_LIMIT
from errors import ProtocolError
from format_base import InstrumentConverter
from midi_events import MidiEventType
from bms_builder import build_song, track_start, u32


EOT = bytes([0x00, 0xFF, 0x2F, 0x00])


def decode(data, **kwargs):
    return BmsDecoder(data, **kwargs).decode()


def test_single_note_track():
    """Ticks 120, one track with a note on voice 1 held for 10 ticks."""
    body = bytes([0x3C, 0x01, 0x64, 0x80, 0x0A, 0x81, 0xFF])
    data = bytes([0xFE, 0x00, 0x78]) + track_start(9) + b'\xFF' + body
    result = decode(data)

    assert result.ok
    assert result.ticks_per_qnote == 120
    assert len(result.tracks) == 2

    meta, track = result.tracks
    assert meta.channel is None
    assert bytes(meta.buffer) == EOT
    assert track.channel == 0
    assert bytes(track.buffer) == bytes([
        0x00, 0x90, 0x3C, 0x64,
        0x0A, 0x80, 0x3C, 0x00,
        0x00, 0xFF, 0x2F, 0x00,
    ])
    types = [event.type for _, event in track.events]
    assert MidiEventType.PROGRAM_CHANGE not in types
    assert meta.closed and track.closed


def test_delay_accumulates_across_skipped_opcodes():
    body = bytes([
        0x3C, 0x01, 0x50,
        0x80, 0x10,              # delay 16
        0x98, 0x01, 0x02,        # consumed, no event
        0x88, 0x01, 0x00,        # delay 256
        0xCC, 0x00, 0x00,        # consumed, no event
        0xC8, 0x00, 0x00, 0x00, 0x00,  # goto is not taken
        0x80, 0x05,              # delay 5
        0x81,                    # note off voice 1
        0xFF,
    ])
    result = decode(build_song([body]))
    deltas = [delta for delta, _ in result.tracks[1].events]
    assert deltas == [0, 16 + 256 + 5, 0]


def test_delay_resets_after_each_event():
    body = bytes([0x80, 0x03, 0x40, 0x01, 0x64,
                  0x80, 0x04, 0x41, 0x02, 0x64,
                  0x81, 0x80, 0x02, 0x82, 0xFF])
    result = decode(build_song([body]))
    deltas = [delta for delta, _ in result.tracks[1].events]
    assert deltas == [3, 4, 0, 2, 0]


def test_end_of_track_carries_pending_delay():
    body = bytes([0x3C, 0x01, 0x64, 0x81, 0x80, 0x30, 0xFF])
    result = decode(build_song([body]))
    assert result.tracks[1].events[-1][0] == 0x30
    assert result.tracks[1].buffer.endswith(bytes([0x30, 0xFF, 0x2F, 0x00]))


def test_note_off_uses_stored_pitch():
    body = bytes([0x30, 0x03, 0x64, 0x40, 0x04, 0x64, 0x83, 0x84, 0xFF])
    result = decode(build_song([body]))
    offs = [event for _, event in result.tracks[1].events
            if event.type == MidiEventType.NOTE_OFF]
    assert [event.data[0] for event in offs] == [0x30, 0x40]


def test_note_off_on_unused_voice_aborts():
    body = bytes([0x3C, 0x00, 0x64, 0x85, 0xFF])
    with pytest.raises(ProtocolError, match="voice 5") as excinfo:
        decode(build_song([body]))
    assert excinfo.value.opcode == 0x85


def test_note_off_twice_aborts():
    body = bytes([0x3C, 0x01, 0x64, 0x81, 0x81, 0xFF])
    with pytest.raises(ProtocolError):
        decode(build_song([body]))


def test_voice_out_of_range():
    body = bytes([0x3C, 0x08, 0x64, 0xFF])
    with pytest.raises(ProtocolError, match="Voice 8"):
        decode(build_song([body]))


def test_percussion_track():
    """A drum kit moves the track to channel 9 and lowers pitches by one."""
    instruments = InstrumentConverter({3: 128})
    body = bytes([0xA4, 0x21, 0x03, 0x24, 0x01, 0x64, 0x80, 0x08, 0x81, 0xFF])
    result = decode(build_song([body]), instruments=instruments)
    track = result.tracks[1]

    assert track.channel == 9
    assert bytes(track.buffer) == bytes([
        0x00, 0xC9, 0x00,
        0x00, 0x99, 0x23, 0x64,
        0x08, 0x89, 0x23, 0x00,
        0x00, 0xFF, 0x2F, 0x00,
    ])


def test_drum_kit_frees_previous_channel():
    instruments = InstrumentConverter({0: 128})
    drums = bytes([0xA4, 0x21, 0x00, 0xFF])
    melody = bytes([0xA4, 0x21, 0x05, 0xFF])
    result = decode(build_song([drums, melody]), instruments=instruments)
    assert [t.channel for t in result.tracks] == [None, 9, 0]
    assert bytes(result.tracks[2].buffer)[:3] == bytes([0x00, 0xC0, 0x05])


def test_second_drum_track_aborts():
    instruments = InstrumentConverter({0: 128})
    drums = bytes([0xA4, 0x21, 0x00, 0xFF])
    with pytest.raises(ProtocolError, match="percussion"):
        decode(build_song([drums, drums]), instruments=instruments)


def test_program_change_and_ignored_bank():
    instruments = InstrumentConverter({2: 40})
    body = bytes([0xA4, 0x20, 0x07, 0xA4, 0x07, 0x01, 0xA4, 0x21, 0x02, 0xFF])
    result = decode(build_song([body]), instruments=instruments)
    assert bytes(result.tracks[1].buffer) == bytes([0x00, 0xC0, 40]) + EOT


def test_unmapped_program_above_127_aborts():
    body = bytes([0xA4, 0x21, 0x90, 0xFF])
    with pytest.raises(ProtocolError, match="instrument list"):
        decode(build_song([body]))


def test_volume_and_pan_controllers():
    body = bytes([
        0x9C, 0x00, 0x50, 0x10,   # volume 80
        0x9C, 0x09, 0x01, 0x02,   # vibrato, ignored
        0x9C, 0x05, 0x01, 0x02,   # unknown, ignored
        0x9A, 0x03, 0x20, 0x00,   # pan 32
        0x9A, 0x01, 0x01, 0x02,   # unknown, ignored
        0xFF,
    ])
    result = decode(build_song([body]))
    assert bytes(result.tracks[1].buffer) == bytes([
        0x00, 0xB0, 0x07, 0x50,
        0x00, 0xB0, 0x0A, 0x20,
    ]) + EOT


def test_volume_out_of_range():
    body = bytes([0x9C, 0x00, 0x80, 0x00, 0xFF])
    with pytest.raises(ProtocolError, match="out of range"):
        decode(build_song([body]))


def test_tempo_in_meta_stream():
    header = bytes([0x80, 0x05, 0xFD, 0x00, 0x78])
    result = decode(build_song([], header=header))
    assert bytes(result.meta_track.buffer) == bytes([
        0x05, 0xFF, 0x51, 0x03, 0x07, 0xA3, 0x20,
    ]) + EOT


def test_tempo_inside_track_is_ignored():
    body = bytes([0xFD, 0x00, 0x78, 0xFF])
    result = decode(build_song([body]))
    assert len(result.warnings) == 1
    assert "tempo" in result.warnings[0]
    assert bytes(result.meta_track.buffer) == EOT
    assert bytes(result.tracks[1].buffer) == EOT


def test_tempo_too_slow_aborts():
    with pytest.raises(ProtocolError, match="too slow"):
        decode(bytes([0xFD, 0x00, 0x01, 0xFF]))


def test_slowest_tempo_that_fits():
    result = decode(bytes([0xFD, 0x00, 0x04, 0xFF]))
    assert bytes(result.meta_track.buffer) == bytes([
        0x00, 0xFF, 0x51, 0x03, 0xE4, 0xE1, 0xC0,
    ]) + EOT


def test_ticks_per_qnote_first_writer_wins():
    header = bytes([0xFE, 0x00, 0x30, 0xFE, 0x01, 0xE0])
    result = decode(build_song([], header=header))
    assert result.ticks_per_qnote == 0x30
    assert len(result.warnings) == 1


def test_ticks_per_qnote_never_set():
    result = decode(b'\xFF')
    assert result.ticks_per_qnote is None
    assert len(result.tracks) == 1
    assert bytes(result.meta_track.buffer) == EOT


def test_subroutine_call_and_return():
    # 0x00: track start -> 0x06, 0x05: end
    # 0x06: call 0x10, note off, end track
    # 0x10: note on, return
    data = bytearray(0x14)
    data[0x00:0x06] = track_start(0x06) + b'\xFF'
    data[0x06:0x0D] = b'\xC4' + u32(0x10) + b'\x81\xFF'
    data[0x10:0x14] = bytes([0x3C, 0x01, 0x64, 0xC6])
    result = decode(bytes(data))

    assert bytes(result.tracks[1].buffer) == bytes([
        0x00, 0x90, 0x3C, 0x64,
        0x00, 0x80, 0x3C, 0x00,
    ]) + EOT


def test_subroutine_shared_by_tracks():
    data = bytearray(0x20)
    data[0x00:0x0B] = track_start(0x0C) + track_start(0x0C) + b'\xFF'
    data[0x0C:0x12] = b'\xC4' + u32(0x18) + b'\xFF'
    data[0x18:0x1D] = bytes([0x3C, 0x01, 0x64, 0x81, 0xC6])
    result = decode(bytes(data))
    assert len(result.tracks) == 3
    assert [t.channel for t in result.tracks[1:]] == [0, 1]
    first, second = result.tracks[1:]
    assert [e.data for _, e in first.events] == [e.data for _, e in second.events]


def nested_calls(depth):
    """Track body calls a chain of subroutines, each calling the next."""
    data = bytearray(track_start(6) + b'\xFF')
    data += b'\xC4' + u32(12) + b'\xFF'
    for level in range(1, depth + 1):
        sub = len(data)
        if level < depth:
            data += b'\xC4' + u32(sub + 6) + b'\xC6'
        else:
            data += b'\xC6'
    return bytes(data)


def test_fifth_nested_call_overflows():
    with pytest.raises(ProtocolError, match="Call stack limit"):
        decode(nested_calls(STACK_LIMIT + 1))


def test_four_nested_calls_are_allowed():
    result = decode(nested_calls(STACK_LIMIT))
    assert result.ok
    assert bytes(result.tracks[1].buffer) == EOT


def test_return_without_call():
    with pytest.raises(ProtocolError, match="outside of subroutine"):
        decode(build_song([b'\xC6\xFF']))


def test_unknown_opcode_aborts():
    with pytest.raises(ProtocolError, match="0xB0") as excinfo:
        decode(build_song([b'\xB0\xFF']))
    assert excinfo.value.offset == 6


def test_pass_through_opcodes():
    body = (bytes([0xE6, 1, 2, 0xE7, 1, 2, 0x9E, 1, 2, 0xAD, 1, 2, 3])
            + bytes([0xCB, 1, 2, 3, 4, 5, 6, 7, 0xD6, 1, 0xF4, 1])
            + bytes([0xAC, 1, 2, 3, 0xFF]))
    result = decode(build_song([body]))
    assert bytes(result.tracks[1].buffer) == EOT


def test_ac_with_zero_ends_track():
    body = bytes([0x3C, 0x01, 0x64, 0x81, 0xAC, 0x00, 0x00, 0x00, 0xB0])
    result = decode(build_song([body]))
    assert result.ok
    assert result.tracks[1].closed
    assert bytes(result.tracks[1].buffer).endswith(EOT)


def test_channel_event_in_meta_stream_aborts():
    with pytest.raises(ProtocolError, match="outside of a track"):
        decode(bytes([0x3C, 0x00, 0x64, 0xFF]))


def test_nested_track_start_aborts():
    body = track_start(0) + b'\xFF'
    with pytest.raises(ProtocolError, match="inside a track"):
        decode(build_song([body]))


def test_seventeen_tracks_exhaust_channels():
    body = b'\xFF'
    result = decode(build_song([body] * 16))
    assert sorted(t.channel for t in result.tracks[1:]) == list(range(16))
    assert result.tracks[-1].channel == 9
    with pytest.raises(ProtocolError, match="16 MIDI channels"):
        decode(build_song([body] * 17))


def test_truncated_stream():
    with pytest.raises(ProtocolError, match="end of data"):
        decode(bytes([0x80]))
    with pytest.raises(ProtocolError, match="end of data"):
        decode(bytes([0x80, 0x01]))


def test_non_strict_keeps_partial_tracks():
    body = bytes([0x3C, 0x00, 0x64, 0x85])
    result = BmsDecoder(build_song([body])).decode(strict=False)
    assert not result.ok
    assert isinstance(result.error, ProtocolError)
    assert len(result.tracks[1].events) == 1
    assert "Note Off" in result.disasm[-1] or "Note On" in result.disasm[-1]


def test_emergency_brake():
    # Delays forever would run off the end; a long run of them trips the brake
    data = bytes([0x80, 0x01] * 50) + b'\xFF'
    with pytest.raises(ProtocolError, match="Emergency brake"):
        decode(data, max_steps=10)


def test_delay_overflow_aborts():
    # 4097 * 0xFFFF ticks is past the largest MIDI delta time
    body = bytes([0x88, 0xFF, 0xFF]) * 4097 + b'\xFF'
    data = build_song([body])
    with pytest.raises(ProtocolError, match="delta-time range"):
        decode(data)

    result = BmsDecoder(data).decode(strict=False)
    assert not result.ok
    assert isinstance(result.error, ProtocolError)
    assert result.error.offset is not None


def test_delay_up_to_largest_delta_time():
    body = bytes([0x88, 0xFF, 0xFF]) * 4096 + bytes([0x88, 0x0F, 0xFF]) + b'\xFF'
    result = decode(build_song([body]))
    assert bytes(result.tracks[1].buffer) == bytes([0xFF, 0xFF, 0xFF, 0x7F, 0xFF, 0x2F, 0x00])


def test_disassembly_lines():
    body = bytes([0x3C, 0x01, 0x64, 0x81, 0xFF])
    result = decode(build_song([body]))
    assert result.disasm[0].startswith("  00000000:  C1 00 00 00 06")
    assert "Track Start" in result.disasm[0]
    assert any("Note On" in line and "pitch 60" in line for line in result.disasm)
    assert "(end of sequence)" in result.disasm[-1]


def test_disassembly_names_instruments():
    instruments = InstrumentConverter({2: 40, 3: 128})
    body = bytes([0xA4, 0x21, 0x02, 0xFF])
    drums = bytes([0xA4, 0x21, 0x03, 0xFF])
    result = decode(build_song([body, drums]), instruments=instruments)
    lines = [line for line in result.disasm if "set instrument" in line]
    assert "2 -> 40 (Violin) on channel 0" in lines[0]
    assert "3 -> 0 (Drum Kit) on channel 9" in lines[1]


def test_decoders_are_independent():
    data = build_song([bytes([0x3C, 0x01, 0x64, 0x81, 0xFF])])
    first = decode(data)
    second = decode(data)
    assert bytes(first.tracks[1].buffer) == bytes(second.tracks[1].buffer)
    assert second.tracks[1].channel == 0


def test_byte_cursor():
    cursor = ByteCursor(b'\x01\x02\x03\x04\x05')
    assert cursor.read_u16() == 0x0102
    cursor.seek(1)
    assert cursor.read_u24() == 0x020304
    assert bytes(cursor.trace) == b'\x01\x02\x02\x03\x04'
    cursor.seek(0)
    assert cursor.read_u32() == 0x01020304
    with pytest.raises(ProtocolError):
        cursor.seek(6)
    cursor.seek(5)
    assert cursor.at_end()
