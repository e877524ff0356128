#!/usr/bin/env python3
"""
Convert BMS sequence files to standard MIDI files.
"""

import sys

from converter import BmsConverter, ConverterConfig
from errors import BmsError


USAGE = """\
Usage: bms2mid <bmsFile> <midiFile> [instrumentList] [options]

Arguments:
  bmsFile                 - Input .bms sequence
  midiFile                - Output .mid file
  instrumentList          - Text file with an instrument name or General MIDI
                            number for each instrument ID (or a YAML patch map).
                            Optional, but the instruments in the MIDI will
                            probably be wrong without it.

Options:
  --config <file.yaml>    - Load settings from a YAML config file
  --disasm                - Also write a text disassembly (.txt)
  --dump-events           - Also write the decoded events as JSON (.events)
  --verbose               - Print every opcode as it is decoded

Examples:
  bms2mid mboss.bms mboss.mid instruments.txt
  bms2mid enemy2.bms enemy2.mid --config sunshine.yaml --disasm"""


def parse_args(argv):
    """Split command-line arguments into positionals and options.

    Returns:
        Tuple of (positional args, options dict), or None on a usage error
    """
    options = {}
    args = []

    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == '--config':
            if i + 1 >= len(argv):
                return None
            options['config'] = argv[i + 1]
            i += 1  # Skip next arg
        elif arg == '--disasm':
            options['disasm'] = True
        elif arg == '--dump-events':
            options['dump_events'] = True
        elif arg == '--verbose':
            options['verbose'] = True
        elif arg.startswith('--'):
            return None
        else:
            args.append(arg)
        i += 1

    if len(args) not in (2, 3):
        return None
    return args, options


def main(argv=None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    parsed = parse_args(argv)
    if parsed is None:
        print(USAGE)
        return 1
    args, options = parsed

    try:
        if 'config' in options:
            config = ConverterConfig.from_yaml(options['config'])
        else:
            config = ConverterConfig()
        if len(args) == 3:
            config.instrument_map = args[2]
        for name in ('disasm', 'dump_events', 'verbose'):
            if options.get(name):
                setattr(config, name, True)

        converter = BmsConverter(config)
        converter.convert_file(args[0], args[1])
    except OSError as e:
        sys.stdout.flush()
        reason = e.strerror or str(e)
        print(f"ERROR! failed to open '{e.filename}': {reason}", file=sys.stderr)
        return 1
    except BmsError as e:
        sys.stdout.flush()
        print(f"ERROR! {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
