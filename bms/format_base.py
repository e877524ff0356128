"""
Instrument tables and the instrument id to General MIDI program converter.
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from errors import InstrumentMapError


# Program number that moves a track to the percussion channel
DRUM_KIT = 128
PERCUSSION_CHANNEL = 9

# Instrument names accepted in instrument lists, in program order.
# These are the names used by existing BMS instrument lists.
INSTRUMENT_NAMES = [
    # Piano
    "Acoustic Grand Piano", "Bright Piano", "Electric Grand Piano", "Honky-tonk Piano",
    "Electric Piano 1", "Electric Piano 2", "Harpsichord", "Clavinet",
    # Melodic Percussion
    "Celesta", "Glockenspiel", "Music Box", "Vibraphone",
    "Marimba", "Xylophone", "Tubular Bells", "Dulcimer",
    # Organ
    "Hammond Organ", "Percussive Organ", "Rock Organ", "Church Organ",
    "Reed Organ", "Accordian", "Harmonica", "Tango Accordian",
    # Guitar
    "Nylon String Guitar", "Steel String Guitar", "Jazz Guitar", "Clean Electric Guitar",
    "Muted Guitar", "Overdrive Guitar", "Distortion Guitar", "Guitar Harmonics",
    # Bass
    "Acoustic Bass", "Fingered Bass", "Picked Bass", "Fretless Bass",
    "Slap Bass 1", "Slap Bass 2", "Synth Bass 1", "Synth Bass 2",
    # String
    "Violin", "Viola", "Cello", "Contrabass",
    "Tremolo Strings", "Pizzicato Strings", "Orchestral Harp", "Timpani",
    # Ensemble
    "String Ensemble 1", "String Ensemble 2", "Synth Strings 1", "Synth Strings 2",
    "Choir Ahh", "Choir Oohh", "Synth Voice", "Orchestral Hit",
    # Brass
    "Trumpet", "Trombone", "Tuba", "Muted Trumpet",
    "French Horn", "Brass Section", "Synth Brass 1", "Synth Brass 2",
    # Reed
    "Soprano Sax", "Alto Sax", "Tenor Sax", "Baritone Sax",
    "Oboe", "English Horn", "Bassoon", "Clarinet",
    # Pipe
    "Piccolo", "Flute", "Recorder", "Pan Flute",
    "Blown Bottle", "Shakuhachi", "Whistle", "Ocarina",
    # Synth Lead
    "Square Lead", "Sawtooth Lead", "Calliope Lead", "Chiff Lead",
    "Charang Lead", "Voice Lead", "Fifth Lead", "Bass & Lead",
    # Synth Pad
    "New Age", "Warm", "Polysynth", "Choir",
    "Bowed", "Metallic", "Halo", "Sweep",
    # Synth FX
    "FX Rain", "FX Soundtrack", "FX Crystal", "FX Atmosphere",
    "FX Brightness", "FX Goblins", "FX Echo Drops", "FX Star Theme",
    # Ethnic
    "Sitar", "Banjo", "Shamisen", "Koto",
    "Kalimba", "Bagpipe", "Fiddle", "Shanai",
    # Percussive
    "Tinkle Bell", "Agogo", "Steel Drums", "Woodblock",
    "Taiko Drum", "Melodic Tom", "Synth Drum", "Reverse Cymbal",
    # Sound Effects
    "Guitar Fret Noise", "Breath Noise", "Seashore", "Bird Tweet",
    "Telephone Ring", "Helicopter", "Applause", "Gunshot",
    # DRUM_KIT
    "Drum Kit",
]

# Standard General MIDI instrument names, also accepted in instrument lists
GM_INSTRUMENTS = [
    "Acoustic Grand Piano", "Bright Acoustic Piano", "Electric Grand Piano", "Honky-tonk Piano",
    "Electric Piano 1", "Electric Piano 2", "Harpsichord", "Clavi",
    "Celesta", "Glockenspiel", "Music Box", "Vibraphone",
    "Marimba", "Xylophone", "Tubular Bells", "Dulcimer",
    "Drawbar Organ", "Percussive Organ", "Rock Organ", "Church Organ",
    "Reed Organ", "Accordion", "Harmonica", "Tango Accordion",
    "Acoustic Guitar (nylon)", "Acoustic Guitar (steel)", "Electric Guitar (jazz)", "Electric Guitar (clean)",
    "Electric Guitar (muted)", "Overdriven Guitar", "Distortion Guitar", "Guitar harmonics",
    "Acoustic Bass", "Electric Bass (finger)", "Electric Bass (pick)", "Fretless Bass",
    "Slap Bass 1", "Slap Bass 2", "Synth Bass 1", "Synth Bass 2",
    "Violin", "Viola", "Cello", "Contrabass",
    "Tremolo Strings", "Pizzicato Strings", "Orchestral Harp", "Timpani",
    "String Ensemble 1", "String Ensemble 2", "SynthStrings 1", "SynthStrings 2",
    "Choir Aahs", "Voice Oohs", "Synth Voice", "Orchestra Hit",
    "Trumpet", "Trombone", "Tuba", "Muted Trumpet",
    "French Horn", "Brass Section", "SynthBrass 1", "SynthBrass 2",
    "Soprano Sax", "Alto Sax", "Tenor Sax", "Baritone Sax",
    "Oboe", "English Horn", "Bassoon", "Clarinet",
    "Piccolo", "Flute", "Recorder", "Pan Flute",
    "Blown Bottle", "Shakuhachi", "Whistle", "Ocarina",
    "Lead 1 (square)", "Lead 2 (sawtooth)", "Lead 3 (calliope)", "Lead 4 (chiff)",
    "Lead 5 (charang)", "Lead 6 (voice)", "Lead 7 (fifths)", "Lead 8 (bass + lead)",
    "Pad 1 (new age)", "Pad 2 (warm)", "Pad 3 (polysynth)", "Pad 4 (choir)",
    "Pad 5 (bowed)", "Pad 6 (metallic)", "Pad 7 (halo)", "Pad 8 (sweep)",
    "FX 1 (rain)", "FX 2 (soundtrack)", "FX 3 (crystal)", "FX 4 (atmosphere)",
    "FX 5 (brightness)", "FX 6 (goblins)", "FX 7 (echoes)", "FX 8 (sci-fi)",
    "Sitar", "Banjo", "Shamisen", "Koto",
    "Kalimba", "Bag pipe", "Fiddle", "Shanai",
    "Tinkle Bell", "Agogo", "Steel Drums", "Woodblock",
    "Taiko Drum", "Melodic Tom", "Synth Drum", "Reverse Cymbal",
    "Guitar Fret Noise", "Breath Noise", "Seashore", "Bird Tweet",
    "Telephone Ring", "Helicopter", "Applause", "Gunshot"
]


def lookup_program(entry: Union[int, str]) -> int:
    """Resolve an instrument list entry to a program number (0-128).

    Args:
        entry: Program number, decimal string, or instrument name

    Returns:
        Program number, DRUM_KIT for the drum kit
    """
    if isinstance(entry, bool):
        raise InstrumentMapError(f"Invalid instrument entry {entry!r}")
    if isinstance(entry, int):
        program = entry
    else:
        name = entry.strip()
        digits = name[1:] if name[:1] in ('+', '-') else name
        if digits.isascii() and digits.isdigit():
            program = int(name)
        elif name in INSTRUMENT_NAMES:
            return INSTRUMENT_NAMES.index(name)
        elif name in GM_INSTRUMENTS:
            return GM_INSTRUMENTS.index(name)
        else:
            raise InstrumentMapError(f"Unknown instrument '{name}'")
    if not 0 <= program <= DRUM_KIT:
        raise InstrumentMapError(f"Program number {program} out of range (0-{DRUM_KIT})")
    return program


class InstrumentConverter:
    """Maps BMS instrument ids to General MIDI programs.

    Ids without an entry are passed through unchanged. A result of
    DRUM_KIT means the track should be moved to the percussion channel.
    """

    def __init__(self, programs: Optional[Dict[int, int]] = None):
        self.programs: Dict[int, int] = dict(programs or {})

    def convert(self, inst_id: int) -> int:
        """Convert an original instrument id to a target program."""
        return self.programs.get(inst_id, inst_id)

    def update(self, patch_map: Dict) -> None:
        """Merge YAML-style entries ({id: program or name}) into the table."""
        for key, value in patch_map.items():
            self.programs[self._parse_int_key(key)] = lookup_program(value)

    def get_instrument_name(self, inst_id: int) -> str:
        """Get human-readable name of the program an id converts to."""
        program = self.convert(inst_id)
        if 0 <= program < len(INSTRUMENT_NAMES):
            return INSTRUMENT_NAMES[program]
        return f"Unknown Instrument ({program})"

    def __len__(self) -> int:
        return len(self.programs)

    @classmethod
    def from_lines(cls, lines: List[str]) -> 'InstrumentConverter':
        """Build from an instrument list, one entry per id starting at 0.

        Line n holds the entry for id n, so a blank line is an unknown
        instrument. Blank lines at the end of the file are ignored.
        """
        lines = list(lines)
        while lines and not lines[-1].strip():
            lines.pop()
        programs = {}
        for inst_id, line in enumerate(lines):
            programs[inst_id] = lookup_program(line)
        return cls(programs)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'InstrumentConverter':
        """Load an instrument list (.txt) or YAML patch map (.yaml/.yml)."""
        path = Path(path)
        with open(path, 'r') as f:
            if path.suffix.lower() in ('.yaml', '.yml'):
                try:
                    patch_map = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise InstrumentMapError(f"{path}: {e}") from e
                if not isinstance(patch_map, dict):
                    raise InstrumentMapError(f"{path}: expected a mapping of instrument ids")
                converter = cls()
                converter.update(patch_map)
                return converter
            return cls.from_lines(f.read().splitlines())

    @staticmethod
    def _parse_int_key(key) -> int:
        """Convert YAML config key to int (handles '0xAA', '170', etc)."""
        try:
            return int(key, 0) if isinstance(key, str) else int(key)
        except ValueError:
            raise InstrumentMapError(f"Invalid instrument id {key!r}")
