"""
Public sketch-to-Knitout compilation API.

compile_scene() is the single entry point that takes a scene and pipeline
options and returns the compiled programs with every intermediate artifact.
compile_file() reads a sketch file (``.json`` scene document or ``.svg``)
and writes the joint Knitout program next to it; ``knitsketch`` on the
command line wraps it.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

import yaml

from knitsketch.config.params import ConfigError, Params, load_yaml
from knitsketch.knitout.simulation import simulate
from knitsketch.knitout.store import Knitout
from knitsketch.mesh.mesh import Mesh
from knitsketch.orchestrator.pipeline import Pipeline
from knitsketch.schemas.issues import IssueLog
from knitsketch.sketch.io import load_json, load_svg
from knitsketch.sketch.scene import Scene, SceneError
from knitsketch.stitch.sampler import StitchSampler
from knitsketch.trace.trace import Trace

logger = logging.getLogger(__name__)


@dataclass
class CompileResult:
    """Artifacts of one compilation, one entry per linked group of sketches."""

    knitouts: list[Knitout] = field(default_factory=list)
    meshes: list[Mesh] = field(default_factory=list)
    samplers: list[StitchSampler] = field(default_factory=list)
    traces: list[Trace] = field(default_factory=list)
    issues: IssueLog = field(default_factory=IssueLog)

    @property
    def ok(self) -> bool:
        return not self.issues.has_errors()

    def to_string(self) -> str:
        """All programs as one Knitout file (``; Part i`` separated)."""
        if not self.knitouts:
            return ""
        return Knitout.to_joint_string(*self.knitouts)


def _params(params: Union[Params, Mapping[str, Any], None]) -> Params:
    if isinstance(params, Params):
        return params
    return Params.from_mapping(params or {})


def compile_scene(scene: Scene, params: Union[Params, Mapping[str, Any], None] = None) -> CompileResult:
    """
    Compile every linked group of sketches of *scene* into Knitout.

    Parameters
    ----------
    scene:
        The sketch scene; it is not modified.
    params:
        Validated :class:`Params` or a mapping of option overrides.

    Returns
    -------
    CompileResult
        Programs, meshes, samplers and traces, plus every issue reported on
        the way.  Input problems never raise; check ``result.ok``.

    Raises
    ------
    ConfigError
        If an option is invalid.
    PipelineError
        If a stage fails (for example a wale moving further than the machine
        can rack).
    """
    pipeline = Pipeline(scene, _params(params))
    knitouts = pipeline.run()
    result = CompileResult(
        knitouts=knitouts,
        meshes=pipeline.meshes,
        samplers=pipeline.get_samplers(),
        traces=pipeline.get_traces(),
        issues=pipeline.issues,
    )
    for issue in result.issues:
        logger.log(logging.WARNING if issue.is_error else logging.DEBUG, "%s: %s", issue.kind.value, issue.message)
    return result


def load_scene(path: Union[str, Path]) -> Scene:
    """Read a ``.json`` scene document or an ``.svg`` drawing."""
    path = Path(path)
    if path.suffix.lower() == ".svg":
        return load_svg(path.read_text(encoding="utf-8"))
    if path.suffix.lower() == ".json":
        return load_json(path)
    raise SceneError(f"Unsupported sketch file {path.name!r} (expected .json or .svg)")


def compile_file(
    sketch_path: Union[str, Path],
    out_path: Optional[Union[str, Path]] = None,
    params: Union[Params, Mapping[str, Any], None] = None,
) -> CompileResult:
    """Compile a sketch file and write the Knitout program to *out_path*.

    *out_path* defaults to the sketch path with a ``.k`` suffix.
    """
    sketch_path = Path(sketch_path)
    out = Path(out_path) if out_path is not None else sketch_path.with_suffix(".k")
    result = compile_scene(load_scene(sketch_path), params)
    out.write_text(result.to_string() + "\n", encoding="utf-8")
    logger.info("Wrote %d programs to %s", len(result.knitouts), out)
    return result


# ── Command line ─────────────────────────────────────────────────────────────


def _option(text: str) -> tuple[str, Any]:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {text!r}")
    return key, yaml.safe_load(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knitsketch",
        description="Compile knitting sketches into Knitout machine programs.",
    )
    parser.add_argument("sketch", help="Sketch file (.json scene document or .svg)")
    parser.add_argument("-o", "--output", help="Knitout output file (default: sketch path with .k suffix)")
    parser.add_argument("-c", "--config", help="YAML file of option overrides")
    parser.add_argument(
        "-s", "--set", dest="options", type=_option, action="append", default=[],
        metavar="KEY=VALUE", help="Override one option, e.g. -s gauge=full -s sizing.default.wale='5 stitches / mm'",
    )
    parser.add_argument("--check", action="store_true", help="Replay every program on a simulated machine")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every pipeline step")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    try:
        overrides: dict[str, Any] = (load_yaml(Path(args.config)) or {}) if args.config else {}
        overrides.update(dict(args.options))
        if args.verbose:
            overrides["verbose"] = True
        params = Params.from_mapping(overrides)
        result = compile_file(args.sketch, args.output, params)
    except (ConfigError, SceneError, FileNotFoundError) as exc:
        print(f"knitsketch: {exc}", file=sys.stderr)
        return 2
    if args.check:
        for knitout in result.knitouts:
            result.issues.extend(simulate(knitout, params.max_racking).issues)
    for issue in result.issues.errors():
        print(f"error: {issue.message}", file=sys.stderr)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
