"""
Conversion orchestrator.
Handles config loading, single-snapshot conversion and batch processing.
"""

import sys
import traceback
import yaml
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from dsp_tracer import R_DIR
from errors import ConversionError
from events import EventKind, Timeline
from machine import MachineState
from options import ConversionOptions
from output_generators import MidiGenerator, dump_timeline_to_text, export_settings_json
from performance import PerformanceExtractor
from source_map import SourceMapper
from spc_file import SampleInfo, read_spc, survey_samples
from tempo_estimation import estimate_bpm, onset_signal


# Default drum program for one-shot samples in generated source templates
DRUM_TEMPLATE_PROGRAM = -35


@dataclass
class ConversionResult:
    """Everything one conversion produces."""
    midi_bytes: bytes
    timeline: Timeline
    diagnostics: List[ConversionError] = field(default_factory=list)
    steps: int = 0  # Instructions executed
    start_cycle: int = 0
    dir_page: int = 0  # DSP source directory page when emulation ended
    bpm: float = 60.0  # Tempo the file was written with

    @property
    def truncated(self) -> bool:
        return self.timeline.truncated

    @property
    def reason(self) -> str:
        return self.timeline.reason.value

    def sources_used(self) -> List[int]:
        return sorted({e.payload['srcn'] for e in self.timeline if e.kind is EventKind.NOTE_ON})


def convert_state(state: MachineState, options: Optional[ConversionOptions] = None,
                  source_mapper: Optional[SourceMapper] = None,
                  title: Optional[str] = None) -> ConversionResult:
    """Run the driver in `state` and encode its performance as a MIDI file.

    The state is consumed: emulation mutates it in place.

    Raises:
        UnsupportedOpcode: the driver executed an instruction that cannot run
    """
    options = options or ConversionOptions()
    source_mapper = source_mapper or SourceMapper()
    start_cycle = state.cycles

    extractor = PerformanceExtractor(state, options, source_mapper)
    timeline = extractor.run()

    if options.auto_bpm:
        bpm = estimate_bpm(onset_signal(timeline, start_cycle))
        # Too few onsets keeps the configured tempo
        if bpm is not None:
            options = replace(options, bpm=bpm)

    generator = MidiGenerator(options, source_mapper)
    midi_bytes = generator.generate(timeline, title, start_cycle)

    return ConversionResult(
        midi_bytes=midi_bytes,
        timeline=timeline,
        diagnostics=list(extractor.diagnostics) + list(generator.diagnostics),
        steps=extractor.steps,
        start_cycle=start_cycle,
        dir_page=state.dsp_regs[R_DIR],
        bpm=options.bpm,
    )


def load_config(config_path: Union[str, Path, None]) -> Tuple[ConversionOptions, SourceMapper]:
    """Read a YAML config with optional `options:` and `sources:` sections."""
    if config_path is None:
        return ConversionOptions(), SourceMapper()
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")
    unknown = set(config) - {'options', 'sources'}
    if unknown:
        raise ValueError(f"{config_path}: unknown section(s) {', '.join(sorted(unknown))}")
    options = ConversionOptions.from_dict(config.get('options'))
    source_mapper = SourceMapper(config.get('sources') or {})
    return options, source_mapper


def sources_template(samples: List[SampleInfo]) -> Dict[str, Any]:
    """Starter `sources:` config for the samples a song uses.

    Looping samples default to piano; one-shot samples are guessed to be
    drums.
    """
    sources = {}
    for sample in samples:
        entry: Dict[str, Any] = {
            'program': DRUM_TEMPLATE_PROGRAM if sample.one_shot else 0,
            'center_note': 60,
        }
        if sample.warning:
            entry['name'] = sample.warning
        sources[f"0x{sample.srcn:02X}"] = entry
    return {'sources': sources}


def output_stem(path: Path) -> str:
    """Sanitized output base name for a snapshot file."""
    filename = path.stem
    # Replace characters that are invalid in Windows filenames
    invalid_chars = '<>:"/\\|?*'
    for char in invalid_chars:
        filename = filename.replace(char, '_')
    return filename


@dataclass
class BatchOutcome:
    """Result of converting one file in a batch."""
    path: str
    ok: bool
    outputs: List[str] = field(default_factory=list)
    truncated: bool = False
    reason: Optional[str] = None  # Termination reason, or failure message
    diagnostics: List[str] = field(default_factory=list)
    bpm: Optional[float] = None
    detail: Optional[str] = None  # Traceback for unexpected failures


def _convert_worker(path: str, options_dict: Dict[str, Any], sources_dict: Dict[str, Any],
                    output_dir: str, dump: bool, export_json: bool,
                    list_sources: bool) -> BatchOutcome:
    """Convert one snapshot file. Top-level so worker processes can run it."""
    source_path = Path(path)
    try:
        options = ConversionOptions.from_dict(options_dict)
        source_mapper = SourceMapper(sources_dict)
        spc = read_spc(source_path)
        title = options.title or spc.title or source_path.stem
        result = convert_state(spc.to_state(), options, source_mapper, title)
        # Dumps and the settings export use the tempo the file was written with
        options = replace(options, bpm=result.bpm)

        out_dir = Path(output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        stem = output_stem(source_path)
        outputs = []

        midi_file = out_dir / f"{stem}.mid"
        midi_file.write_bytes(result.midi_bytes)
        outputs.append(midi_file.name)

        if dump:
            text_file = out_dir / f"{stem}.txt"
            text_file.write_text(dump_timeline_to_text(result.timeline, options, source_mapper,
                                                       title, result.start_cycle))
            outputs.append(text_file.name)

        if export_json:
            json_file = out_dir / f"{stem}.json"
            json_file.write_text(export_settings_json(options, source_mapper, result.timeline))
            outputs.append(json_file.name)

        if list_sources:
            samples = survey_samples(spc.ram, result.dir_page, result.sources_used())
            yaml_file = out_dir / f"{stem}.sources.yaml"
            yaml_file.write_text(yaml.safe_dump(sources_template(samples), sort_keys=False))
            outputs.append(yaml_file.name)

        return BatchOutcome(
            path=path,
            ok=True,
            outputs=outputs,
            truncated=result.truncated,
            reason=result.reason,
            diagnostics=[str(d) for d in result.diagnostics],
            bpm=result.bpm,
        )
    except (ConversionError, OSError, ValueError) as e:
        return BatchOutcome(path=path, ok=False, reason=str(e))


class SnapshotConverter:
    """Converts SPC snapshot files to MIDI, one at a time or as a batch."""

    def __init__(self, options: Optional[ConversionOptions] = None,
                 source_mapper: Optional[SourceMapper] = None,
                 output_dir: Union[str, Path] = 'mid', dump: bool = False,
                 export_json: bool = False, list_sources: bool = False, verbose: bool = False):
        self.options = options or ConversionOptions()
        self.source_mapper = source_mapper or SourceMapper()
        self.output_dir = Path(output_dir)
        self.dump = dump
        self.export_json = export_json
        self.list_sources = list_sources
        self.verbose = verbose

    @classmethod
    def from_config(cls, config_path: Union[str, Path, None], **kwargs) -> 'SnapshotConverter':
        options, source_mapper = load_config(config_path)
        return cls(options, source_mapper, **kwargs)

    def _worker_args(self, path: Union[str, Path]):
        return (str(path), self.options.to_dict(), self.source_mapper.to_dict(),
                str(self.output_dir), self.dump, self.export_json, self.list_sources)

    def convert_file(self, path: Union[str, Path]) -> BatchOutcome:
        """Convert a single file in this process."""
        print(f"Processing: {Path(path).name}")
        try:
            outcome = _convert_worker(*self._worker_args(path))
        except Exception as e:
            outcome = BatchOutcome(path=str(path), ok=False, reason=str(e),
                                   detail=traceback.format_exc())
        self._report(outcome)
        return outcome

    def convert_batch(self, paths: List[Union[str, Path]], jobs: int = 1) -> List[BatchOutcome]:
        """Convert many files; each runs independently and failures stay isolated.

        Results are reported as they complete and returned in input order.
        """
        if jobs <= 1 or len(paths) <= 1:
            return [self.convert_file(path) for path in paths]

        outcomes: Dict[str, BatchOutcome] = {}
        with ProcessPoolExecutor(max_workers=jobs) as pool:
            futures = {pool.submit(_convert_worker, *self._worker_args(path)): str(path)
                       for path in paths}
            for future in as_completed(futures):
                path = futures[future]
                print(f"Processing: {Path(path).name}")
                try:
                    outcome = future.result()
                except Exception as e:
                    outcome = BatchOutcome(path=path, ok=False, reason=str(e),
                                           detail=traceback.format_exc())
                self._report(outcome)
                outcomes[path] = outcome
        return [outcomes[str(path)] for path in paths]

    def _report(self, outcome: BatchOutcome):
        if outcome.ok:
            marker = " (truncated at duration limit)" if outcome.truncated else ""
            print(f"  OK: Generated {', '.join(outcome.outputs)}{marker}")
        else:
            print(f"  ERROR: {outcome.reason}")
            if outcome.detail and self.verbose:
                print(outcome.detail, file=sys.stderr)
        if self.verbose:
            print(f"DEBUG {Path(outcome.path).name}: termination={outcome.reason} bpm={outcome.bpm}",
                  file=sys.stderr)
            for diagnostic in outcome.diagnostics:
                print(f"DEBUG {Path(outcome.path).name}: {diagnostic}", file=sys.stderr)
