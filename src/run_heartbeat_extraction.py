#!/usr/bin/env python3
"""
Heartbeat extraction: ECG recording -> validated beats and heart rate

This script runs the full extraction for one or more recordings:
1. Load the recording (CSV with an ECG column and a time column or rate)
2. Condition the signal (decimation, filtering) and mask artifacts
3. Detect beat candidates and build the beat template
4. Refine the beat sequence
5. Estimate the heart rate
6. Save results (JSON) and export beats / heart rate (CSV)

Usage:
    python src/run_heartbeat_extraction.py recording.csv
    python src/run_heartbeat_extraction.py recording.csv --species Rat --exclude 120 135

Output:
    {output_dir}/{recording}_heartbeats.json  - Beats, windows and metadata
    {output_dir}/{recording}_beats.csv        - Beat peak times and values
    {output_dir}/{recording}_heart_rate.csv   - Heart-rate trace
"""

import argparse
import logging
import sys
from pathlib import Path

import numpy as np

# Ensure this script works when executed from any CWD.
sys.path.insert(0, str(Path(__file__).resolve().parent))

from heartbeat_pipeline.config import Config, SPECIES_PRESETS
from heartbeat_pipeline.io_utils import (
    export_heart_rate_csv,
    export_heartbeats_csv,
    load_recording_csv,
    save_result_json,
)
from heartbeat_pipeline.pipeline import HeartbeatPipeline
from heartbeat_pipeline.preprocess import check_polarity


def process_recording(
    csv_path: Path,
    output_dir: Path,
    config: Config,
    exclusions=(),
    refine: bool = True,
    fs: float = None,
    verbose: bool = True,
) -> bool:
    """
    Process a single recording through the extraction pipeline.

    Parameters
    ----------
    csv_path : Path
        Path to the recording CSV file.
    output_dir : Path
        Directory for the result files.
    config : Config
        Pipeline configuration.
    exclusions : sequence of (start, end)
        Time ranges to exclude, in seconds.
    refine : bool
        Run the sequence refiner (otherwise all candidates are kept).
    fs : float, optional
        Sampling rate override in Hz.
    verbose : bool
        Print progress messages.

    Returns
    -------
    bool
        True if processing succeeded.
    """
    name = csv_path.stem

    if verbose:
        print(f"\n{'='*60}")
        print(f"Processing: {name}")
        print(f"{'='*60}")

    try:
        if verbose:
            print("  [1/6] Loading data...")
        raw = load_recording_csv(csv_path, fs=fs, config=config)
        if verbose:
            print(f"        ✓ Loaded {raw.n_samples:,} samples ({raw.duration_seconds:.1f}s at {raw.fs:g} Hz)")

        pipeline = HeartbeatPipeline(raw, config)

        if verbose:
            print("  [2/6] Conditioning signal...")
        conditioned = pipeline.condition()
        if verbose:
            print(f"        ✓ Processing rate: {conditioned.fs:g} Hz (decimation x{conditioned.decimation_factor})")
            if config.BANDPASS_ENABLE:
                print(f"        ✓ Butterworth {config.BANDPASS_LOW}-{config.BANDPASS_HIGH}Hz (order={config.FILTER_ORDER})")
            polarity = check_polarity(conditioned.values, config)
            marker = "⚠" if polarity.is_inverted else "✓"
            print(f"        {marker} {polarity.recommendation}")
            print(f"        ✓ Artifact windows: {len(conditioned.artifacts)}")

        for start, end in exclusions:
            pipeline.add_exclusion(start, end)
        if verbose and exclusions:
            print(f"        ✓ Exclusion windows: {len(pipeline.exclusions)}")

        if verbose:
            print("  [3/6] Detecting beat candidates...")
        detection = pipeline.detect()
        if verbose:
            print(f"        ✓ Candidates: {detection.candidates.n_candidates}")
            if detection.candidates.relaxed:
                print(f"        ⚠ Threshold relaxed to {detection.candidates.threshold:.4g}")
            print(f"        ✓ Template from {detection.template.n_waveforms} waveforms "
                  f"(reference offset {detection.template.reference_offset}, "
                  f"search radius {detection.template.peak_range})")

        if refine:
            if verbose:
                print("  [4/6] Refining beat sequence...")
            refinement = pipeline.refine()
            if verbose:
                print(f"        ✓ Segments: {len(refinement.segments)}")
                print(f"        ✓ Beats: {refinement.beats.size} ({refinement.n_removed} removed)")
                if refinement.unresolved:
                    print(f"        ⚠ Unresolved stretches: {len(refinement.unresolved)}")
        elif verbose:
            print("  [4/6] Refinement skipped")

        if verbose:
            print("  [5/6] Estimating heart rate...")
        trace = pipeline.heart_rate()
        if verbose:
            rate = trace.in_units(config.UNIT)
            n_valid = int(np.isfinite(rate).sum())
            print(f"        ✓ {n_valid}/{len(trace)} samples outside excluded windows")

        if verbose:
            print("  [6/6] Saving results...")
        result = pipeline.result()
        json_path = output_dir / f"{name}_heartbeats.json"
        save_result_json(result, json_path)
        beats_path = output_dir / f"{name}_beats.csv"
        export_heartbeats_csv(result, beats_path)
        rate_path = output_dir / f"{name}_heart_rate.csv"
        export_heart_rate_csv(trace, rate_path, config.UNIT)
        if verbose:
            for path in (json_path, beats_path, rate_path):
                print(f"        ✓ Saved: {path.name}")

        return True

    except Exception as e:
        print(f"  ✗ ERROR processing {name}: {e}")
        import traceback
        traceback.print_exc()
        return False


def main():
    parser = argparse.ArgumentParser(
        description="Extract validated heartbeats and heart rate from ECG recordings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Mouse recording with default parameters
    python src/run_heartbeat_extraction.py Data/mouse01.csv

    # Human recording, excluding two ranges, rate in Hz
    python src/run_heartbeat_extraction.py Data/h01.csv --species Human \\
        --exclude 30 45 --exclude 300 310 --unit Hz
        """
    )

    parser.add_argument(
        "recordings",
        nargs="+",
        type=Path,
        help="Recording CSV file(s)"
    )

    parser.add_argument(
        "--species", "-s",
        choices=sorted(SPECIES_PRESETS),
        default="Mouse",
        help="Parameter preset (default: Mouse)"
    )

    parser.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=Path("Results"),
        help="Output directory (default: Results)"
    )

    parser.add_argument(
        "--fs",
        type=float,
        default=None,
        help="Sampling rate in Hz (default: from the file)"
    )

    parser.add_argument(
        "--exclude", "-x",
        nargs=2,
        type=float,
        action="append",
        default=[],
        metavar=("START", "END"),
        help="Exclude a time range in seconds (repeatable)"
    )

    parser.add_argument(
        "--unit",
        choices=["bpm", "Hz"],
        default=None,
        help="Heart-rate unit for the CSV export"
    )

    parser.add_argument(
        "--no-refine",
        action="store_true",
        help="Keep every candidate (skip sequence refinement)"
    )

    parser.add_argument(
        "--workers", "-j",
        type=int,
        default=None,
        help="Worker threads for refinement"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress progress messages"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    overrides = {}
    if args.unit:
        overrides["UNIT"] = args.unit
    if args.workers:
        overrides["N_WORKERS"] = args.workers
    config = Config.for_species(args.species, **overrides)

    verbose = not args.quiet

    if verbose:
        print("=" * 60)
        print("ECG Heartbeat Extraction")
        print("=" * 60)
        print(f"Species preset: {config.SPECIES}")
        print(f"Config: Fs<={config.PROCESSING_SAMPLING_RATE:g}Hz, "
              f"Filter={config.BANDPASS_LOW}-{config.BANDPASS_HIGH}Hz, "
              f"Plausible rate={config.SUSPICIOUS_FREQ_LOW}-{config.SUSPICIOUS_FREQ_HIGH}Hz")
        print(f"Recordings to process: {len(args.recordings)}")

    results = []
    for csv_path in args.recordings:
        success = process_recording(
            csv_path,
            args.output_dir,
            config,
            exclusions=args.exclude,
            refine=not args.no_refine,
            fs=args.fs,
            verbose=verbose,
        )
        results.append((csv_path.stem, success))

    if verbose:
        print("\n" + "=" * 60)
        print("SUMMARY")
        print("=" * 60)

        successful = sum(1 for _, s in results if s)
        failed = len(results) - successful

        print(f"Total recordings: {len(results)}")
        print(f"Successful: {successful}")
        print(f"Failed: {failed}")

        if failed > 0:
            print("\nFailed recordings:")
            for name, success in results:
                if not success:
                    print(f"  - {name}")

        print(f"\nOutput directory: {args.output_dir}")

    return 0 if all(s for _, s in results) else 1


if __name__ == "__main__":
    sys.exit(main())
