"""
Output generation for decoded BMS sequences.

Generates standard MIDI files, text disassembly and JSON event dumps
from a DecodeResult.
"""

import json
import struct
from pathlib import Path
from typing import Dict, List, Optional

from midi_events import MidiEventType


DEFAULT_DIVISION = 120  # Ticks per quarter note when the sequence never sets it


def disassemble_to_text(title: str, result) -> str:
    """Generate text disassembly of a decoded sequence.

    Args:
        title: Name shown in the header (usually the input file name)
        result: DecodeResult from BmsDecoder.decode()

    Returns:
        Formatted disassembly text
    """
    output = []
    output.append(f"Sequence: {title}")
    if result.ticks_per_qnote is not None:
        output.append(f"Ticks per quarter note: {result.ticks_per_qnote}")
    output.append(f"Tracks: {len(result.tracks)}")
    for track in result.tracks:
        if track.is_meta_track():
            output.append(f"  Track {track.index:02d}  meta")
        else:
            output.append(f"  Track {track.index:02d} @ {track.start_offset:08X}  channel {track.channel}")
    output.append("")

    # Decoding order, so subroutines show up where they were called
    output.extend(result.disasm)
    output.append("")

    if result.warnings:
        output.append("Warnings:")
        for warning in result.warnings:
            output.append(f"  {warning}")
        output.append("")

    if result.error is not None:
        output.append(f"Decoding stopped: {result.error}")
        output.append("")

    return '\n'.join(output)


class MidiGenerator:
    """Assembles format 1 MIDI files from decoded tracks."""

    def __init__(self, default_division: int = DEFAULT_DIVISION):
        """Initialize MIDI generator.

        Args:
            default_division: Ticks per quarter note to use when the
                sequence does not set one
        """
        self.default_division = default_division

    def division(self, result) -> int:
        if result.ticks_per_qnote is not None:
            return result.ticks_per_qnote
        return self.default_division

    def build(self, result) -> bytes:
        """Build the complete MIDI file in memory.

        Raises:
            ValueError: If the decode did not complete successfully
        """
        if not result.ok:
            raise ValueError(f"Refusing to write MIDI for a failed decode: {result.error}")

        chunks = [self._chunk(b'MThd', struct.pack('>HHH', 1, len(result.tracks),
                                                   self.division(result)))]
        for track in result.tracks:
            chunks.append(self._chunk(b'MTrk', bytes(track.buffer)))
        return b''.join(chunks)

    def generate(self, result, output_path: Path) -> None:
        """Write the MIDI file. Nothing is written if the build fails."""
        data = self.build(result)
        with open(output_path, 'wb') as f:
            f.write(data)

    def write_debug_events(self, result, output_path: Path) -> None:
        """Write the decoded events as JSON to help diagnose conversions."""
        debug_data: Dict = {
            'division': self.division(result),
            'tracks': [],
        }
        if result.error is not None:
            debug_data['error'] = str(result.error)

        for track in result.tracks:
            time = 0
            events: List[Dict] = []
            for delta, event in track.events:
                time += delta
                event_data = event.to_dict()
                event_data['time'] = time
                event_data['delta'] = delta
                events.append(event_data)

            debug_data['tracks'].append({
                'track_num': track.index,
                'channel': track.channel,
                'offset': track.start_offset,
                'length': len(track),
                'note_count': sum(1 for _, e in track.events if e.type == MidiEventType.NOTE_ON),
                'events': events,
            })

        with open(output_path, 'w') as f:
            json.dump(debug_data, f, indent=2)

    @staticmethod
    def _chunk(tag: bytes, payload: bytes) -> bytes:
        return tag + struct.pack('>I', len(payload)) + payload


def track_summary(result) -> List[str]:
    """One line per track, for verbose output."""
    lines = []
    for track in result.tracks:
        channel: Optional[int] = track.channel
        kind = 'meta' if track.is_meta_track() else f"channel {channel}"
        lines.append(f"Track {track.index}: {kind}, {len(track.events)} events, {len(track)} bytes")
    return lines
