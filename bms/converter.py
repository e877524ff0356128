"""
Conversion orchestrator.
Handles configuration, instrument maps, decoding and output writing.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional

import yaml

from decoder import BmsDecoder, DecodeResult, DEFAULT_MAX_STEPS
from errors import ConfigError
from format_base import InstrumentConverter
from output_generators import (
    DEFAULT_DIVISION,
    MidiGenerator,
    disassemble_to_text,
    track_summary
)


@dataclass
class ConverterConfig:
    """Settings for a conversion, usually loaded from YAML."""
    instrument_map: Optional[str] = None  # Instrument list or YAML patch map
    patch_map: Dict = field(default_factory=dict)  # Inline entries, applied last
    default_ticks_per_qnote: int = DEFAULT_DIVISION
    max_steps: int = DEFAULT_MAX_STEPS
    disasm: bool = False
    dump_events: bool = False
    verbose: bool = False

    @classmethod
    def from_yaml(cls, config_path: str) -> 'ConverterConfig':
        """Load settings from a YAML file.

        Relative instrument map paths are resolved against the directory
        of the config file.
        """
        with open(config_path, 'r') as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"{config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: expected a mapping at the top level")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"{config_path}: unknown settings {', '.join(unknown)}")

        config = cls(**data)
        if config.instrument_map is not None:
            map_path = Path(config.instrument_map)
            if not map_path.is_absolute():
                map_path = Path(config_path).parent / map_path
            config.instrument_map = str(map_path)
        config.validate(config_path)
        return config

    def validate(self, source: str = 'config') -> None:
        if not isinstance(self.patch_map, dict):
            raise ConfigError(f"{source}: patch_map must be a mapping")
        for name in ('default_ticks_per_qnote', 'max_steps'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{source}: {name} must be a positive integer")
        if self.default_ticks_per_qnote > 0x7FFF:
            raise ConfigError(f"{source}: default_ticks_per_qnote must be below 0x8000")


class BmsConverter:
    """Main converter class."""

    def __init__(self, config: Optional[ConverterConfig] = None):
        """Initialize with optional configuration."""
        self.config = config or ConverterConfig()

        self.instruments = InstrumentConverter()
        if self.config.instrument_map:
            self.instruments = InstrumentConverter.from_file(self.config.instrument_map)
        if self.config.patch_map:
            self.instruments.update(self.config.patch_map)

        self.midi_generator = MidiGenerator(self.config.default_ticks_per_qnote)

    def decode(self, data: bytes, strict: bool = True) -> DecodeResult:
        """Decode BMS data with the configured instrument map."""
        decoder = BmsDecoder(data, self.instruments,
                             max_steps=self.config.max_steps,
                             verbose=self.config.verbose)
        return decoder.decode(strict=strict)

    def convert_bytes(self, data: bytes) -> bytes:
        """Convert BMS data to MIDI file contents."""
        return self.midi_generator.build(self.decode(data))

    def convert_file(self, input_path: str, output_path: str) -> DecodeResult:
        """Convert one BMS file to a MIDI file.

        The input is decoded completely before anything is written. With
        disasm/dump_events enabled, the side outputs are written next to
        the MIDI file even when decoding fails, to help locate the problem.
        """
        input_path = Path(input_path)
        output_path = Path(output_path)
        print(f"Processing: {input_path.name}")

        with open(input_path, 'rb') as f:
            data = f.read()

        result = self.decode(data, strict=False)

        if self.config.disasm:
            text_file = output_path.with_suffix('.txt')
            text_file.write_text(disassemble_to_text(input_path.name, result))
        if self.config.dump_events:
            self.midi_generator.write_debug_events(result, output_path.with_suffix('.events'))

        if not result.ok:
            raise result.error

        self.midi_generator.generate(result, output_path)

        if self.config.verbose:
            for line in track_summary(result):
                print(line)
        print(f"  OK: Generated {output_path.name} "
              f"({len(result.tracks)} tracks, division {self.midi_generator.division(result)})")
        return result
