#!/usr/bin/env python3
"""
merge_pstm.py -- Merge two Teseo almanac/ephemeris dumps, keeping the newest records.

Reads two files of $PSTMALMANAC / $PSTMEPHEM sentences (e.g. a backup taken
from the receiver and a fresher one from another unit), keeps the most recent
record for every satellite, and writes the merged sentences sorted by
satellite id.  Without an output file the merged set is shown as a table.

Dependencies: numpy, xarray

Usage:
  merge_pstm.py old-dump.txt new-dump.txt merged.txt
  merge_pstm.py old-dump.txt new-dump.txt
  merge_pstm.py old-dump.txt new-dump.txt merged.txt -v
"""

import argparse
import collections
import sys

import numpy as np
import xarray as xr

from pstm_nav import SatelliteRegistry, SentenceError, parse_sentence

# Values returned by SatelliteRegistry.offer()
OFFER_OUTCOMES = ('inserted', 'replaced', 'kept', 'discarded', 'skipped')


# ---- Input ----

def read_sentences(path):
    """Read a sentence dump and return its lines without terminators.

    OSError is left to the caller: an unreadable input aborts the merge.
    """
    with open(path, 'r', encoding='ascii', errors='replace', newline='') as f:
        text = f.read()
    return [line.rstrip('\r') for line in text.split('\n')]


def process_sentences(lines, registry, source='<input>', verbose=False):
    """Parse sentences and offer each record to the registry.

    Returns:
        collections.Counter of offer outcomes ('inserted', 'replaced',
        'kept', 'discarded', 'skipped') and rejected line counts keyed by
        error class name
    """
    stats = collections.Counter()

    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue

        try:
            record = parse_sentence(line)
        except SentenceError as e:
            stats[type(e).__name__] += 1
            if verbose:
                print(f"  {source}:{lineno}: failed processing record: {e}",
                      file=sys.stderr)
            continue

        outcome = registry.offer(record)
        stats[outcome] += 1

        if verbose:
            system = record.system or '---'
            print(f"  {source}:{lineno}: {system} {record.kind.value} "
                  f"sat {record.satellite_id} week={record.week} toa={record.toa} "
                  f"toe={record.toe} toc={record.toc} -> {outcome}",
                  file=sys.stderr)

    return stats


def process_file(path, registry, verbose=False):
    """Read one input dump and merge it into the registry."""
    print(f"Loading {path}...", file=sys.stderr)
    lines = read_sentences(path)
    return process_sentences(lines, registry, source=path, verbose=verbose)


def format_stats(stats):
    """One-line summary of a process_sentences() result."""
    accepted = sum(stats[k] for k in ('inserted', 'replaced', 'kept'))
    rejected = {k: v for k, v in stats.items() if k not in OFFER_OUTCOMES}
    parts = [f"{accepted} records ({stats['inserted']} new, "
             f"{stats['replaced']} replaced, {stats['kept']} kept older)"]
    if stats['discarded']:
        parts.append(f"{stats['discarded']} unsupported ids")
    if stats['skipped']:
        parts.append(f"{stats['skipped']} kind conflicts")
    if rejected:
        parts.append(f"{sum(rejected.values())} rejected: "
                     + ", ".join(f"{k}={v}" for k, v in sorted(rejected.items())))
    return "; ".join(parts)


# ---- Merged record summary ----

def records_to_dataset(records):
    """Build an xarray Dataset of merged records indexed by satellite id ('sv')."""
    records = list(records)
    return xr.Dataset(
        {
            'system': ('sv', np.array([r.system or ''
                                       for r in records], dtype=str)),
            'kind': ('sv', np.array([r.kind.value for r in records], dtype=str)),
            'week': ('sv', np.array([r.week for r in records], dtype=np.uint16)),
            'toa': ('sv', np.array([r.toa for r in records], dtype=np.uint8)),
            'toe': ('sv', np.array([r.toe for r in records], dtype=np.uint32)),
            'toc': ('sv', np.array([r.toc for r in records], dtype=np.uint16)),
        },
        coords={'sv': np.array([r.satellite_id for r in records], dtype=np.uint16)},
    )


def format_record_table(ds):
    """Format the merged record dataset into a readable table."""
    lines = []
    lines.append(f"{'SV':>4s} {'Sys':>4s} {'Kind':>10s} {'Week':>6s} "
                 f"{'TOA':>4s} {'TOE':>10s} {'TOC':>6s}")
    lines.append("-" * 50)

    for i, sv in enumerate(ds.coords['sv'].values):
        lines.append(
            f"{int(sv):4d} {str(ds['system'].values[i]):>4s} "
            f"{str(ds['kind'].values[i]):>10s} "
            f"{int(ds['week'].values[i]):6d} {int(ds['toa'].values[i]):4d} "
            f"{int(ds['toe'].values[i]):10d} {int(ds['toc'].values[i]):6d}"
        )

    return "\n".join(lines)


# ---- Output ----

def write_sentences(path, records):
    """Write the original sentence of each record, one per line."""
    with open(path, 'w', encoding='ascii', newline='\n') as f:
        for record in records:
            f.write(record.raw_text)
            f.write('\n')


# ---- CLI ----

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Merge two Teseo $PSTMALMANAC/$PSTMEPHEM dumps, keeping the newest record per satellite',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s backup.txt receiver.txt merged.txt
  %(prog)s backup.txt receiver.txt
  %(prog)s backup.txt receiver.txt merged.txt --verbose

Records are compared by week then toa (almanac) or week, toe, toc
(ephemeris).  Satellite ids: 1-32 GPS, 33-96 GLONASS, 301-336 Galileo.
        """,
    )

    parser.add_argument('input_a', help='First sentence dump')
    parser.add_argument('input_b', help='Second sentence dump')
    parser.add_argument('output', nargs='?',
        help='Merged output file (default: print decoded records)')
    parser.add_argument('--verbose', '-v', action='store_true',
        help='Show per-sentence decoding and merge decisions')

    args = parser.parse_args(argv)

    registry = SatelliteRegistry()

    for input_file in (args.input_a, args.input_b):
        try:
            stats = process_file(input_file, registry, verbose=args.verbose)
        except OSError as e:
            print(f"Error: failed to read {input_file}: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"  {format_stats(stats)}", file=sys.stderr)

    records = registry.records()

    if args.output:
        try:
            write_sentences(args.output, records)
        except OSError as e:
            print(f"Error: failed to write {args.output}: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"\nMerged {len(records)} satellites to {args.output}", file=sys.stderr)
        # Print output filename to stdout (for scripting)
        print(args.output)
    else:
        print(format_record_table(records_to_dataset(records)))


if __name__ == '__main__':
    main()
