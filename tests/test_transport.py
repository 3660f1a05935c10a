import sys
from contextlib import aclosing

import pytest

from forgeline.classifier import ErrorCategory
from forgeline.errors import ProviderInstallationError, ProviderStreamError
from forgeline.providers import CancellationToken
from forgeline.providers.transport import spawn_jsonl

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


def sh(script: str) -> list[str]:
    return ["sh", "-c", script]


@pytest.mark.asyncio
async def test_reads_one_record_per_line(tmp_path):
    script = """echo '{"type": "system", "session_id": "s1"}'; echo; echo '{"type": "result"}'"""
    records = [r async for r in spawn_jsonl(sh(script), str(tmp_path))]
    assert records == [{"type": "system", "session_id": "s1"}, {"type": "result"}]


@pytest.mark.asyncio
async def test_stdin_payload_is_delivered(tmp_path):
    records = [r async for r in spawn_jsonl(sh("cat"), str(tmp_path), stdin_data='{"echo": 1}\n')]
    assert records == [{"echo": 1}]


@pytest.mark.asyncio
async def test_nonzero_exit_is_classified_from_stderr(tmp_path):
    script = "echo '429 Too Many Requests' >&2; exit 1"
    with pytest.raises(ProviderStreamError) as exc:
        async for _ in spawn_jsonl(sh(script), str(tmp_path)):
            pass
    assert exc.value.classified.category == ErrorCategory.RATE_LIMIT
    assert "429" in exc.value.raw


@pytest.mark.asyncio
async def test_nonzero_exit_after_cancel_is_quiet(tmp_path):
    token = CancellationToken()
    token.cancel("abort")
    records = [r async for r in spawn_jsonl(sh("exit 3"), str(tmp_path), token)]
    assert records == []


@pytest.mark.asyncio
async def test_malformed_line_is_a_stream_error(tmp_path):
    with pytest.raises(ProviderStreamError) as exc:
        async for _ in spawn_jsonl(sh("echo 'not json'"), str(tmp_path)):
            pass
    assert exc.value.raw == "not json"


@pytest.mark.asyncio
async def test_missing_binary_is_an_installation_error(tmp_path):
    with pytest.raises(ProviderInstallationError):
        async for _ in spawn_jsonl(["forgeline-no-such-agent-cli"], str(tmp_path)):
            pass


@pytest.mark.asyncio
async def test_closing_early_terminates_the_child(tmp_path):
    marker = tmp_path / "finished"
    script = f"""echo '{{"n": 1}}'; sleep 30; touch {marker}"""
    async with aclosing(spawn_jsonl(sh(script), str(tmp_path))) as records:
        async for record in records:
            assert record == {"n": 1}
            break
    assert not marker.exists()
