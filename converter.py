"""PDF -> DOCX conversion through a headless LibreOffice subprocess.

Each conversion gets its own input/output paths and LibreOffice profile
directory, so concurrent requests never share converter state or lock files.
The subprocess is bounded by a wall-clock timeout and its outcome is reported
as one of the tagged results below.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import signal
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from config import Settings

logger = logging.getLogger(__name__)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOCX_FILTER = "docx:MS Word 2007 XML"
PDF_NAME_RE = re.compile(r"\.pdf$", re.IGNORECASE)
OUTPUT_DRAIN_SECONDS = 5.0
KILL_GRACE_SECONDS = 5.0


# ---------------------
# Process outcomes
# ---------------------

@dataclass(frozen=True)
class Succeeded:
    path: Path


@dataclass(frozen=True)
class TimedOut:
    signal: Optional[str] = None


@dataclass(frozen=True)
class Signaled:
    signal: str


@dataclass(frozen=True)
class ExitCode:
    code: int


@dataclass(frozen=True)
class SpawnError:
    cause: str


ProcessOutcome = Union[Succeeded, TimedOut, Signaled, ExitCode, SpawnError]


@dataclass
class ProcessRun:
    outcome: ProcessOutcome
    stdout: str = ""
    stderr: str = ""


# ---------------------
# Errors
# ---------------------

class UploadRejected(Exception):
    def __init__(self, status_code: int, error: str, **extra: Any):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.extra = extra

    def payload(self) -> Dict[str, Any]:
        return {"error": self.error, **self.extra}


class ConverterUnavailable(Exception):
    pass


class ConversionFailed(Exception):
    """A conversion that ran (or tried to) and did not produce a document."""

    def __init__(self, kind: str, message: str, run: Optional[ProcessRun] = None, details: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.run = run
        self.details = details

    @classmethod
    def from_run(cls, run: ProcessRun, timeout: float) -> "ConversionFailed":
        outcome = run.outcome
        if isinstance(outcome, TimedOut):
            return cls("TimedOut", f"Conversion timed out after {timeout:g}s", run)
        if isinstance(outcome, Signaled):
            return cls("FailedSignal", "Converter interrupted", run)
        if isinstance(outcome, ExitCode):
            return cls("FailedExitCode", f"Converter exit {outcome.code}", run)
        if isinstance(outcome, SpawnError):
            return cls("SpawnError", "Conversion failed (spawn error)", run, details=outcome.cause)
        raise ValueError(f"not a failure outcome: {outcome!r}")

    def payload(self) -> Dict[str, Any]:
        outcome = self.run.outcome if self.run else None
        body: Dict[str, Any] = {
            "error": self.message,
            "kind": self.kind,
            "timed_out": isinstance(outcome, TimedOut),
            "signal": getattr(outcome, "signal", None),
            "exit_code": getattr(outcome, "code", None),
            "stdout": self.run.stdout if self.run else "",
            "stderr": self.run.stderr if self.run else "",
        }
        if self.details:
            body["details"] = self.details
        return body


# ---------------------
# Jobs
# ---------------------

@dataclass
class ConversionJob:
    job_id: str
    input_path: Path
    output_path: Path
    profile_dir: Path

    @classmethod
    def create(cls, tmp_dir: Path) -> "ConversionJob":
        job_id = str(uuid.uuid4())
        return cls(
            job_id=job_id,
            input_path=tmp_dir / f"{job_id}.pdf",
            output_path=tmp_dir / f"{job_id}.docx",
            profile_dir=tmp_dir / f"lo-profile-{job_id}",
        )

    def paths(self) -> List[Path]:
        return [self.input_path, self.output_path, self.profile_dir]


@dataclass
class ConvertedDocument:
    content: bytes
    filename: str
    media_type: str = field(default=DOCX_MIME)


def validate_upload(filename: Optional[str], size: int, max_bytes: int) -> str:
    """Return the upload name or raise UploadRejected."""
    if not filename or size <= 0:
        raise UploadRejected(400, "No file uploaded")
    if not PDF_NAME_RE.search(filename):
        raise UploadRejected(400, "The file must be a PDF")
    if size > max_bytes:
        raise UploadRejected(
            413,
            "PDF too large",
            max_mb=max_bytes // (1024 * 1024),
            hint="Reduce the PDF size or raise MAX_PDF_MB on the server.",
        )
    return filename


def output_filename(filename: str) -> str:
    return f"{PDF_NAME_RE.sub('', os.path.basename(filename)) or 'document'}.docx"


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return f"SIG{number}"


def _kill_group(proc: "asyncio.subprocess.Process") -> bool:
    """SIGKILL the process group led by ``proc``; False if nothing was left."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return False
    return True


async def _reap(proc: "asyncio.subprocess.Process") -> None:
    try:
        await asyncio.wait_for(proc.wait(), KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Converter process %s still holds its pipes after SIGKILL", proc.pid)


async def _collect_output(readers: List["asyncio.Task[bytes]"]) -> List[str]:
    done, pending = await asyncio.wait(readers, timeout=OUTPUT_DRAIN_SECONDS)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    out = []
    for task in readers:
        if task in done and task.exception() is None:
            out.append(task.result().decode("utf-8", errors="replace"))
        else:
            out.append("")
    return out


class ConversionSupervisor:
    def __init__(self, settings: Settings):
        self.candidates = list(settings.CONVERTER_CANDIDATES)
        self.tmp_dir = Path(settings.CONVERT_TMP_DIR)
        self.timeout = settings.PDF2DOCX_TIMEOUT_SECONDS
        self.probe_timeout = settings.CONVERTER_PROBE_TIMEOUT_SECONDS

    def environment(self) -> Dict[str, str]:
        # LibreOffice needs a writable HOME even with an explicit profile.
        return {**os.environ, "HOME": str(self.tmp_dir)}

    async def probe(self, binary: str) -> Optional[str]:
        """Version text printed by ``binary --version``, or None if unusable."""
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.environment(),
                start_new_session=True,
            )
        except OSError as exc:
            logger.debug("Converter candidate %s not runnable: %s", binary, exc)
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Converter candidate %s did not answer --version in time", binary)
            _kill_group(proc)
            await _reap(proc)
            return None
        version = stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0 or not version:
            logger.debug("Converter candidate %s rejected (exit %s)", binary, proc.returncode)
            return None
        return version

    async def locate_binary(self) -> Optional[Tuple[str, str]]:
        """First candidate that prints a version and exits 0, with that version."""
        for binary in self.candidates:
            version = await self.probe(binary)
            if version:
                logger.debug("Using converter %s (%s)", binary, version)
                return binary, version
        return None

    def command(self, binary: str, job: ConversionJob) -> List[str]:
        return [
            binary,
            "--headless",
            "--nologo",
            "--norestore",
            "--nodefault",
            "--nolockcheck",
            "--nocrashreport",
            f"-env:UserInstallation={job.profile_dir.as_uri()}",
            "--convert-to",
            DOCX_FILTER,
            "--outdir",
            str(job.output_path.parent),
            str(job.input_path),
        ]

    async def run_process(self, argv: List[str], expected_output: Path, timeout: float) -> ProcessRun:
        """Run the converter and wait for it, killing it once ``timeout`` elapses.

        The converter runs in its own session so the kill also reaches the
        processes it forks (soffice -> oosplash -> soffice.bin). Those hold
        the output pipes, and ``proc.wait()`` only returns once the pipes close.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.environment(),
                start_new_session=True,
            )
        except OSError as exc:
            return ProcessRun(SpawnError(f"{type(exc).__name__}: {exc}"))

        readers = [
            asyncio.ensure_future(proc.stdout.read()),
            asyncio.ensure_future(proc.stderr.read()),
        ]
        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            # The leader may have exited right at the deadline (or been killed
            # while a grandchild kept the pipes open); only a live one counts as timed out.
            timed_out = proc.returncode is None
        # Whatever is left of the group must not outlive the request or touch the job paths.
        if _kill_group(proc) and not timed_out:
            logger.info("Killed leftover converter processes in group %s", proc.pid)
        await _reap(proc)
        stdout, stderr = await _collect_output(readers)

        code = proc.returncode
        if timed_out:
            outcome: ProcessOutcome = TimedOut(_signal_name(-code) if code is not None and code < 0 else None)
        elif code < 0:
            outcome = Signaled(_signal_name(-code))
        elif code != 0:
            outcome = ExitCode(code)
        else:
            outcome = Succeeded(expected_output)
        return ProcessRun(outcome, stdout, stderr)

    def _prepare(self, job: ConversionJob, data: bytes) -> None:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        job.input_path.write_bytes(data)
        job.profile_dir.mkdir(parents=True, exist_ok=True)

    def cleanup(self, job: ConversionJob) -> None:
        for path in job.paths():
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not cleanup conversion path %s: %s", path, exc)

    async def convert(self, data: bytes, filename: str) -> ConvertedDocument:
        located = await self.locate_binary()
        if located is None:
            raise ConverterUnavailable(
                "LibreOffice (soffice) not found. Deploy with LibreOffice installed."
            )
        binary, _ = located

        job = ConversionJob.create(self.tmp_dir)
        try:
            try:
                await asyncio.to_thread(self._prepare, job, data)
            except OSError as exc:
                logger.error("Could not prepare conversion %s in %s: %s", job.job_id, self.tmp_dir, exc)
                raise ConversionFailed("Prepare", "Server error", details=str(exc)) from exc
            run = await self.run_process(self.command(binary, job), job.output_path, self.timeout)
            logger.info("Conversion %s finished: %r", job.job_id, run.outcome)
            if not isinstance(run.outcome, Succeeded):
                raise ConversionFailed.from_run(run, self.timeout)
            try:
                content = await asyncio.to_thread(run.outcome.path.read_bytes)
            except OSError as exc:
                raise ConversionFailed("Readback", "Readback failed", run, details=str(exc)) from exc
            return ConvertedDocument(content, output_filename(filename))
        finally:
            await asyncio.to_thread(self.cleanup, job)
