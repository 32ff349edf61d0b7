#!/usr/bin/env python3
"""
SPC to MIDI extraction tool.
Emulates the sound driver in SPC snapshots and records what it plays.
"""

import sys
import traceback
from pathlib import Path

from converter import SnapshotConverter, load_config


def main():
    """Main entry point."""
    # Parse command-line arguments
    config_file = None
    output_dir = 'mid'
    jobs = 1
    dump = False
    export_json = False
    list_sources = False
    verbose = False
    overrides = {}
    files = []

    argv = sys.argv[1:]
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == '--config' and i + 1 < len(argv):
            config_file = argv[i + 1]
            i += 1  # Skip next arg
        elif arg == '--out' and i + 1 < len(argv):
            output_dir = argv[i + 1]
            i += 1
        elif arg == '--jobs' and i + 1 < len(argv):
            jobs = int(argv[i + 1])
            i += 1
        elif arg == '--max-duration' and i + 1 < len(argv):
            overrides['max_duration'] = float(argv[i + 1])
            i += 1
        elif arg == '--loop-mode' and i + 1 < len(argv):
            overrides['loop_mode'] = argv[i + 1]
            i += 1
        elif arg == '--auto-bpm':
            overrides['auto_bpm'] = True
        elif arg == '--merged':
            overrides['track_layout'] = 'merged'
        elif arg == '--dump':
            dump = True
        elif arg == '--export-json':
            export_json = True
        elif arg == '--list-sources':
            list_sources = True
        elif arg == '--verbose':
            verbose = True
        else:
            files.append(arg)
        i += 1

    if not files:
        print("Usage: python extract_spc.py [options] <file.spc> [<file.spc> ...]")
        print()
        print("Arguments:")
        print("  file.spc                - SPC snapshot(s) to convert")
        print()
        print("Options:")
        print("  --config <file>         - YAML file with conversion options and per-source settings")
        print("  --out <dir>             - Output directory (default: mid)")
        print("  --jobs <n>              - Convert files in n worker processes")
        print("  --max-duration <secs>   - Stop emulating after this much song time")
        print("  --loop-mode <mode>      - truncate-at-loop, play-once or repeat-n-times")
        print("  --auto-bpm              - Estimate the tempo from the note onsets")
        print("  --merged                - Write a single-track (format 0) file")
        print("  --dump                  - Also write a text dump of the event timeline")
        print("  --export-json           - Also write the effective settings as JSON")
        print("  --list-sources          - Also write a sources.yaml template for the samples used")
        print("  --verbose               - Print diagnostics to stderr")
        print()
        print("Examples:")
        print("  python extract_spc.py song.spc")
        print("  python extract_spc.py --config game.yaml --jobs 4 spc/*.spc")
        sys.exit(1)

    try:
        options, source_mapper = load_config(config_file)
        if overrides:
            settings = options.to_dict()
            settings.update(overrides)
            options = type(options).from_dict(settings)
        converter = SnapshotConverter(options, source_mapper, output_dir=output_dir, dump=dump,
                                      export_json=export_json, list_sources=list_sources,
                                      verbose=verbose)
        outcomes = converter.convert_batch([Path(f) for f in files], jobs=jobs)
    except Exception as e:
        print(f"\nError: {e}")
        print("\nFull traceback:")
        traceback.print_exc()
        sys.exit(1)

    failed = [o for o in outcomes if not o.ok]
    print(f"\nConverted {len(outcomes) - len(failed)} of {len(outcomes)} file(s)")
    if failed:
        sys.exit(2)


if __name__ == '__main__':
    main()
