import asyncio
import os
from pathlib import Path

import pytest

from conftest import make_settings
from converter import (
    DOCX_MIME,
    ConversionSupervisor,
    ExitCode,
    Signaled,
    SpawnError,
    Succeeded,
    TimedOut,
    UploadRejected,
    output_filename,
    validate_upload,
)


PDF_BYTES = b"%PDF-1.4\n1 0 obj <<>> endobj\ntrailer <<>>\n%%EOF\n"

VERSION_CHECK = """
echo "$@" >> "{log}"
echo "HOME=$HOME" >> "{log}"
if [ "$1" = "--version" ]; then
  echo "FakeOffice 7.6"
  exit 0
fi
"""

PARSE_ARGS = """
outdir=""
input=""
while [ $# -gt 0 ]; do
  case "$1" in
    --outdir) outdir="$2"; shift 2 ;;
    *) input="$1"; shift ;;
  esac
done
base=$(basename "$input" .pdf)
"""

CONVERTS = PARSE_ARGS + """
echo "converting $input"
printf 'PK fake docx' > "$outdir/$base.docx"
"""


def write_converter(tmp_path: Path, body: str, name: str = "fake-soffice") -> Path:
    log = tmp_path / f"{name}.log"
    script = tmp_path / name
    script.write_text("#!/bin/sh\n" + VERSION_CHECK.format(log=log) + body)
    script.chmod(0o755)
    return script


def leftovers(tmp_path: Path):
    convert_dir = tmp_path / "convert"
    return sorted(p.name for p in convert_dir.iterdir()) if convert_dir.exists() else []


def pdf_upload(name: str = "scan.pdf", content: bytes = PDF_BYTES):
    return {"file": (name, content, "application/pdf")}


@pytest.mark.asyncio
async def test_converts_pdf_and_cleans_up(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload("Scan Report.PDF"))

    assert resp.status_code == 200
    assert resp.content == b"PK fake docx"
    assert resp.headers["content-type"] == DOCX_MIME
    assert resp.headers["content-disposition"] == (
        "attachment; filename=\"Scan Report.docx\"; filename*=UTF-8''Scan%20Report.docx"
    )
    assert leftovers(tmp_path) == []

    log = (tmp_path / "fake-soffice.log").read_text()
    assert "--headless" in log
    assert "-env:UserInstallation=file://" in log
    assert "docx:MS Word 2007 XML" in log
    assert f"HOME={tmp_path / 'convert'}" in log


@pytest.mark.asyncio
async def test_word_alias_route_uses_same_converter(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.post("/convert/pdf-to-word/word", files=pdf_upload())

    assert resp.status_code == 200
    assert 'filename="scan.docx"' in resp.headers["content-disposition"]


@pytest.mark.asyncio
async def test_timeout_is_reported_as_timed_out(make_client, tmp_path):
    script = write_converter(tmp_path, "exec sleep 10\n")
    client = await make_client(CONVERTER_CANDIDATES=[str(script)], PDF2DOCX_TIMEOUT_SECONDS=0.5)

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert resp.status_code == 500
    body = resp.json()
    assert body["kind"] == "TimedOut"
    assert body["timed_out"] is True
    assert body["signal"] == "SIGKILL"
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_external_kill_is_not_a_timeout(make_client, tmp_path):
    script = write_converter(tmp_path, 'echo "about to die" >&2\nkill -9 $$\n')
    client = await make_client(CONVERTER_CANDIDATES=[str(script)], PDF2DOCX_TIMEOUT_SECONDS=30)

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert resp.status_code == 500
    body = resp.json()
    assert body["kind"] == "FailedSignal"
    assert body["timed_out"] is False
    assert body["signal"] == "SIGKILL"
    assert "about to die" in body["stderr"]
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_nonzero_exit_reports_code_and_output(make_client, tmp_path):
    script = write_converter(tmp_path, 'echo "working"\necho "source file could not be loaded" >&2\nexit 3\n')
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert resp.status_code == 500
    body = resp.json()
    assert body["kind"] == "FailedExitCode"
    assert body["exit_code"] == 3
    assert body["timed_out"] is False
    assert "working" in body["stdout"]
    assert "could not be loaded" in body["stderr"]
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_zero_exit_without_output_is_readback_failure(make_client, tmp_path):
    script = write_converter(tmp_path, "exit 0\n")
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert resp.status_code == 500
    body = resp.json()
    assert body["kind"] == "Readback"
    assert body["error"] == "Readback failed"
    assert body["details"]
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_missing_converter_is_server_error(make_client, tmp_path):
    client = await make_client(CONVERTER_CANDIDATES=[str(tmp_path / "nope"), "definitely-not-a-binary-xyz"])

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert resp.status_code == 500
    assert "LibreOffice" in resp.json()["error"]
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "files",
    [
        None,
        {"file": ("scan.pdf", b"", "application/pdf")},
    ],
)
async def test_empty_upload_rejected_before_spawning(make_client, tmp_path, files):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.post("/convert/pdf-to-word", files=files)

    assert resp.status_code == 400
    assert resp.json()["error"] == "No file uploaded"
    assert not (tmp_path / "fake-soffice.log").exists()


@pytest.mark.asyncio
async def test_non_pdf_upload_rejected(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.post("/convert/pdf-to-word", files={"file": ("notes.docx", b"data", "application/msword")})

    assert resp.status_code == 400
    assert not (tmp_path / "fake-soffice.log").exists()


@pytest.mark.asyncio
async def test_oversized_upload_rejected(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)], MAX_PDF_MB=1)

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload(content=b"x" * (1024 * 1024 + 1)))

    assert resp.status_code == 413
    assert resp.json()["max_mb"] == 1
    assert not (tmp_path / "fake-soffice.log").exists()


@pytest.mark.asyncio
async def test_concurrent_conversions_are_independent(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    first, second = await asyncio.gather(
        client.post("/convert/pdf-to-word", files=pdf_upload("a.pdf")),
        client.post("/convert/pdf-to-word", files=pdf_upload("b.pdf")),
    )

    assert first.status_code == second.status_code == 200
    assert 'filename="a.docx"' in first.headers["content-disposition"]
    assert 'filename="b.docx"' in second.headers["content-disposition"]
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_debug_route_reports_version(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    client = await make_client(CONVERTER_CANDIDATES=[str(script)])

    resp = await client.get("/debug/converter")

    assert resp.status_code == 200
    assert resp.text == f"{script}: FakeOffice 7.6"


@pytest.mark.asyncio
async def test_locate_binary_skips_unusable_candidates(tmp_path):
    silent = tmp_path / "silent"
    silent.write_text("#!/bin/sh\nexit 0\n")
    silent.chmod(0o755)
    failing = tmp_path / "failing"
    failing.write_text("#!/bin/sh\necho 'broken'\nexit 1\n")
    failing.chmod(0o755)
    good = write_converter(tmp_path, CONVERTS)

    supervisor = ConversionSupervisor(
        make_settings(tmp_path, CONVERTER_CANDIDATES=[str(tmp_path / "missing"), str(silent), str(failing), str(good)])
    )

    assert await supervisor.locate_binary() == (str(good), "FakeOffice 7.6")


@pytest.mark.asyncio
async def test_run_process_outcomes(tmp_path):
    supervisor = ConversionSupervisor(make_settings(tmp_path))
    expected = tmp_path / "out.docx"

    ok = await supervisor.run_process(["sh", "-c", "echo done"], expected, timeout=10)
    assert ok.outcome == Succeeded(expected)
    assert ok.stdout.strip() == "done"

    failed = await supervisor.run_process(["sh", "-c", "exit 7"], expected, timeout=10)
    assert failed.outcome == ExitCode(7)

    killed = await supervisor.run_process(["sh", "-c", "kill -TERM $$"], expected, timeout=10)
    assert killed.outcome == Signaled("SIGTERM")

    slow = await supervisor.run_process(["sleep", "10"], expected, timeout=0.3)
    assert slow.outcome == TimedOut("SIGKILL")

    missing = await supervisor.run_process([str(tmp_path / "nope")], expected, timeout=10)
    assert isinstance(missing.outcome, SpawnError)
    assert "nope" in missing.outcome.cause


def test_validate_upload_rules():
    assert validate_upload("a.PDF", 10, 100) == "a.PDF"
    with pytest.raises(UploadRejected) as missing:
        validate_upload(None, 0, 100)
    assert missing.value.status_code == 400
    with pytest.raises(UploadRejected) as wrong_type:
        validate_upload("a.pdf.exe", 10, 100)
    assert wrong_type.value.status_code == 400
    with pytest.raises(UploadRejected) as too_big:
        validate_upload("a.pdf", 101, 100)
    assert too_big.value.status_code == 413


def test_output_filename_swaps_extension():
    assert output_filename("report.pdf") == "report.docx"
    assert output_filename("Report.PDF") == "Report.docx"
    assert output_filename("dir/a.b.pdf") == "a.b.docx"
    assert output_filename(".pdf") == "document.docx"


def process_alive(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    if stat.parent.parent.exists():
        try:
            return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
        except OSError:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def gone(pid: int, within: float = 3.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + within
    while process_alive(pid):
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.05)
    return True


@pytest.mark.asyncio
async def test_timeout_kills_processes_forked_by_converter(make_client, tmp_path):
    pid_file = tmp_path / "grandchild.pid"
    script = write_converter(tmp_path, f'sleep 30 &\necho $! > "{pid_file}"\nwait\n')
    client = await make_client(CONVERTER_CANDIDATES=[str(script)], PDF2DOCX_TIMEOUT_SECONDS=0.5)
    loop = asyncio.get_running_loop()
    started = loop.time()

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert loop.time() - started < 10
    assert resp.status_code == 500
    assert resp.json()["kind"] == "TimedOut"
    assert await gone(int(pid_file.read_text()))
    assert leftovers(tmp_path) == []


@pytest.mark.asyncio
async def test_killed_converter_does_not_wait_for_its_children(tmp_path):
    supervisor = ConversionSupervisor(make_settings(tmp_path))
    pid_file = tmp_path / "grandchild.pid"
    loop = asyncio.get_running_loop()
    started = loop.time()

    run = await supervisor.run_process(
        ["sh", "-c", f'sleep 30 & echo $! > "{pid_file}"; kill -9 $$'], tmp_path / "out.docx", timeout=1
    )

    assert loop.time() - started < 10
    assert run.outcome == Signaled("SIGKILL")
    assert await gone(int(pid_file.read_text()))


@pytest.mark.asyncio
async def test_unusable_work_dir_is_json_server_error(make_client, tmp_path):
    script = write_converter(tmp_path, CONVERTS)
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    client = await make_client(CONVERTER_CANDIDATES=[str(script)], CONVERT_TMP_DIR=str(blocker / "convert"))

    resp = await client.post("/convert/pdf-to-word", files=pdf_upload())

    assert resp.status_code == 500
    assert resp.headers["content-type"] == "application/json"
    body = resp.json()
    assert body["kind"] == "Prepare"
    assert body["error"] == "Server error"
    assert body["details"]
    assert "--headless" not in (tmp_path / "fake-soffice.log").read_text()
