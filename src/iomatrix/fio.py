# Copyright (c) Syntropy Systems
"""fio job file rendering and JSON result parsing."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, cast

from iomatrix.errors import ToolFailure
from iomatrix.expand import SAMPLE_AXIS
from iomatrix.models.outcome import FailureKind
from iomatrix.models.result import JobMetrics
from iomatrix.models.space import format_value

if TYPE_CHECKING:
    from pathlib import Path

    from iomatrix.config import RunOptions
    from iomatrix.models.base import JSONValue
    from iomatrix.models.job import Job

# Percentile keys as fio writes them
P50_KEY = "50.000000"
P99_KEY = "99.000000"
USEC_TO_NSEC = 1000.0


def target_of(job: Job, options: RunOptions) -> str:
    """Return the file or device a job exercises."""
    value = job.params.get("filename")
    if value is None:
        return options.device
    return format_value(value)


def resource_key_of(job: Job, options: RunOptions) -> str:
    """Return the storage resource key used for mutual exclusion.

    Jobs without the resource key axis all share the configured device.
    """
    value = job.params.get(options.resource_key)
    if value is None:
        return options.device
    return format_value(value)


def global_options(options: RunOptions) -> dict[str, str]:
    """Options written to the ``[global]`` section of every job file."""
    section = {name: format_value(value) for name, value in options.fio_options.items()}
    section["filename"] = options.device
    section["runtime"] = str(options.runtime)
    if options.ramp:
        section["ramp_time"] = str(options.ramp)

    if options.verify:
        section["do_verify"] = "1"
        section["verify"] = "md5"
    else:
        section["norandommap"] = "1"
        section["random_generator"] = "lfsr"

    if options.hipri:
        section["hipri"] = "1"
    return section


def job_options(job: Job, options: RunOptions) -> dict[str, str]:
    """Options written to the job's own section."""
    section = {
        name: format_value(value)
        for name, value in job.params.items()
        if name != SAMPLE_AXIS and name not in options.meta_axes
    }

    if options.pin_cpus:
        numjobs = job.params.get("numjobs", options.fio_options.get("numjobs", 1))
        count = int(numjobs)
        section["cpus_allowed"] = f"0-{count - 1}" if count > 1 else "0"
        section["cpus_allowed_policy"] = "split"
    return section


def render_job_file(job: Job, options: RunOptions) -> str:
    """Render a job as an fio job file."""
    lines = ["[global]"]
    lines.extend(f"{name}={value}" for name, value in global_options(options).items())
    lines.append("")
    lines.append(f"[{job.id}]")
    lines.extend(f"{name}={value}" for name, value in job_options(job, options).items())
    lines.append("")
    return "\n".join(lines)


def build_command(options: RunOptions, cfg_path: Path, out_path: Path) -> list[str]:
    """Build the fio argv for one job file."""
    return [
        options.fio,
        f"--output-format={options.output_format}",
        f"--output={out_path}",
        str(cfg_path),
    ]


def build_prep_command(options: RunOptions, target: str) -> list[str]:
    """Build the argv of the sequential precondition write."""
    return [
        options.fio,
        "--name=prep",
        "--rw=write",
        "--direct=1",
        "--bs=1M",
        f"--filename={target}",
    ]


def _as_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _latency(op: dict[str, object], new_key: str, old_key: str) -> dict[str, object] | None:
    """Return a latency block in nanoseconds (fio 2 reported microseconds)."""
    block = op.get(new_key)
    if isinstance(block, dict):
        return cast("dict[str, object]", block)
    block = op.get(old_key)
    if isinstance(block, dict):
        scaled: dict[str, object] = {}
        block = cast("dict[str, object]", block)
        mean = _as_float(block.get("mean"))
        if mean is not None:
            scaled["mean"] = mean * USEC_TO_NSEC
        percentile = block.get("percentile")
        if isinstance(percentile, dict):
            values = {
                key: _as_float(val) for key, val in cast("dict[str, object]", percentile).items()
            }
            scaled["percentile"] = {
                key: value * USEC_TO_NSEC for key, value in values.items() if value is not None
            }
        return scaled
    return None


def _percentile(block: dict[str, object] | None, key: str) -> float | None:
    if block is None:
        return None
    percentile = block.get("percentile")
    if not isinstance(percentile, dict):
        return None
    return _as_float(cast("dict[str, object]", percentile).get(key))


class _OpTotals:
    """Accumulates one direction (read, write, trim) across fio jobs."""

    def __init__(self) -> None:
        self.iops: float | None = None
        self.bw: float | None = None
        self.lat_weighted = 0.0
        self.lat_weight = 0.0
        self.lat_sum = 0.0
        self.lat_count = 0
        self.p50: float | None = None
        self.p99: float | None = None

    @property
    def lat_mean(self) -> float | None:
        """Mean latency weighted by iops, or a plain mean if no job did any."""
        if self.lat_weight > 0:
            return self.lat_weighted / self.lat_weight
        if self.lat_count:
            return self.lat_sum / self.lat_count
        return None

    def add(self, op: dict[str, object]) -> None:
        iops = _as_float(op.get("iops"))
        bw = _as_float(op.get("bw"))
        if iops is not None:
            self.iops = (self.iops or 0.0) + iops
        if bw is not None:
            self.bw = (self.bw or 0.0) + bw

        lat = _latency(op, "lat_ns", "lat")
        mean = _as_float(lat.get("mean")) if lat else None
        if mean is not None:
            self.lat_sum += mean
            self.lat_count += 1
            if iops is not None and iops > 0:
                self.lat_weighted += mean * iops
                self.lat_weight += iops

        clat = _latency(op, "clat_ns", "clat")
        # Percentiles do not combine; keep the worst job
        for attr, key in (("p50", P50_KEY), ("p99", P99_KEY)):
            value = _percentile(clat, key)
            if value is not None:
                current = getattr(self, attr)
                setattr(self, attr, value if current is None else max(current, value))


def parse_document(data: dict[str, object]) -> JobMetrics:
    """Normalize a decoded fio JSON document."""
    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, list) or not raw_jobs:
        msg = "fio output contains no jobs"
        raise ToolFailure(FailureKind.UNPARSABLE_OUTPUT.value, msg)

    totals = {"read": _OpTotals(), "write": _OpTotals(), "trim": _OpTotals()}
    usr_cpu: list[float] = []
    sys_cpu: list[float] = []
    counters = {"ctx": 0.0, "majf": 0.0, "minf": 0.0}
    errors: list[int] = []

    for raw_job in raw_jobs:
        if not isinstance(raw_job, dict):
            msg = "fio output has a malformed job entry"
            raise ToolFailure(FailureKind.UNPARSABLE_OUTPUT.value, msg)
        fio_job = cast("dict[str, object]", raw_job)
        for direction, accumulator in totals.items():
            op = fio_job.get(direction)
            if isinstance(op, dict):
                accumulator.add(cast("dict[str, object]", op))

        for bucket, key in ((usr_cpu, "usr_cpu"), (sys_cpu, "sys_cpu")):
            value = _as_float(fio_job.get(key))
            if value is not None:
                bucket.append(value)
        for key in counters:
            counters[key] += _as_float(fio_job.get(key)) or 0.0
        error = fio_job.get("error")
        if isinstance(error, int) and error:
            errors.append(error)

    extra: dict[str, JSONValue] = {"fio.jobs": len(raw_jobs)}
    version = data.get("fio version")
    if isinstance(version, str):
        extra["fio.version"] = version
    if usr_cpu:
        extra["fio.usr_cpu"] = sum(usr_cpu) / len(usr_cpu)
    if sys_cpu:
        extra["fio.sys_cpu"] = sum(sys_cpu) / len(sys_cpu)
    for key, value in counters.items():
        extra[f"fio.{key}"] = value
    trim = totals["trim"]
    if trim.iops is not None:
        extra["fio.trim_iops"] = trim.iops
    if trim.bw is not None:
        extra["fio.trim_bw_kib"] = trim.bw
    if errors:
        extra["fio.errors"] = cast("JSONValue", errors)

    read, write = totals["read"], totals["write"]
    return JobMetrics(
        read_iops=read.iops,
        read_bw_kib=read.bw,
        read_lat_mean_ns=read.lat_mean,
        read_clat_p50_ns=read.p50,
        read_clat_p99_ns=read.p99,
        write_iops=write.iops,
        write_bw_kib=write.bw,
        write_lat_mean_ns=write.lat_mean,
        write_clat_p50_ns=write.p50,
        write_clat_p99_ns=write.p99,
        extra=extra,
    )


def parse_output(text: str) -> JobMetrics:
    """Parse fio's JSON output text.

    fio may print warnings ahead of the document, so parsing starts at the
    first opening brace.
    """
    start = text.find("{")
    if start < 0:
        msg = "fio output contains no JSON document"
        raise ToolFailure(FailureKind.UNPARSABLE_OUTPUT.value, msg)
    try:
        data, _ = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError as e:
        msg = f"fio output is not valid JSON: {e}"
        raise ToolFailure(FailureKind.UNPARSABLE_OUTPUT.value, msg) from e
    if not isinstance(data, dict):
        msg = "fio output is not a JSON object"
        raise ToolFailure(FailureKind.UNPARSABLE_OUTPUT.value, msg)
    return parse_document(cast("dict[str, object]", data))


def parse_output_file(path: Path) -> JobMetrics:
    """Parse the result document fio wrote to path."""
    if not path.exists():
        msg = f"fio wrote no output file at {path}"
        raise ToolFailure(FailureKind.MISSING_OUTPUT.value, msg)
    return parse_output(path.read_text(errors="replace"))
