"""Scripted stand-ins for the fetch and transcode binaries.

Each stage runs a short Python script through ``sys.executable`` so the
pipeline exercises real subprocesses, pipes and exit codes.
"""

from __future__ import annotations

import json
import sys
import textwrap
from dataclasses import dataclass

from engine.pipeline import ToolCommands


def _script(source: str) -> str:
    return textwrap.dedent(source).strip() + "\n"


FETCH_OK = _script(
    """
    import sys, time
    delay = float(sys.argv[2]) if len(sys.argv) > 2 else 0.0
    time.sleep(delay)
    sys.stderr.write("[download]  42.5% of 1.00MiB at 1.00MiB/s\\n")
    sys.stderr.flush()
    sys.stdout.buffer.write(b"A" * 4096)
    sys.stdout.flush()
    sys.stderr.write("[download] 100% of 1.00MiB in 00:01\\n")
    sys.stderr.flush()
    sys.stdout.buffer.write(b"B" * 4096)
    sys.stdout.flush()
    """
)

FETCH_PRIVATE = _script(
    """
    import sys
    sys.stderr.write("ERROR: [youtube] abc123: Private video. Sign in if you've been granted access\\n")
    sys.exit(1)
    """
)

FETCH_HANGS = _script(
    """
    import sys, time
    sys.stderr.write("[download]   5.0% of 1.00MiB\\n")
    sys.stderr.flush()
    sys.stdout.buffer.write(b"A" * 1024)
    sys.stdout.flush()
    time.sleep(60)
    """
)

FETCH_WRITES_MARKER = _script(
    """
    import sys
    open(sys.argv[2], "w").close()
    sys.stdout.buffer.write(b"A" * 16)
    """
)

TRANSCODE_COPY = _script(
    """
    import sys
    data = sys.stdin.buffer.read()
    target = sys.argv[1]
    if target == "-":
        sys.stdout.buffer.write(b"OUT" + data)
        sys.stdout.flush()
    else:
        with open(target, "wb") as handle:
            handle.write(b"OUT" + data)
    """
)

TRANSCODE_FAILS = _script(
    """
    import sys
    sys.stderr.write("pipe:0: Invalid data found when processing input\\n")
    sys.exit(1)
    """
)

INFO_FAILS = _script(
    """
    import sys
    sys.stderr.write("ERROR: [youtube] abc123: Video unavailable\\n")
    sys.exit(1)
    """
)

INFO_GARBAGE = _script(
    """
    print("not json")
    """
)

EXPECTED_OUTPUT = b"OUT" + b"A" * 4096 + b"B" * 4096

DEFAULT_INFO = {
    "title": "My Song: Live!",
    "thumbnail": "https://i.ytimg.com/vi/abc123/hqdefault.jpg",
    "duration": 212,
    "uploader": "Some Channel",
    "view_count": 1234,
}


def make_info_script(payload: dict) -> str:
    return _script(
        f"""
        import sys
        sys.stdout.write({json.dumps(json.dumps(payload))})
        """
    )


@dataclass(frozen=True)
class ScriptedTools(ToolCommands):
    fetch_script: str = FETCH_OK
    transcode_script: str = TRANSCODE_COPY
    info_script: str = make_info_script(DEFAULT_INFO)
    fetch_extra_args: tuple = ()

    def fetch_argv(self, url: str) -> list[str]:
        return [sys.executable, "-c", self.fetch_script, url, *self.fetch_extra_args]

    def transcode_argv(self, audio_format: str, output_path: str | None = None) -> list[str]:
        # Keeps the format check of the real command builder.
        super().transcode_argv(audio_format, output_path)
        return [sys.executable, "-c", self.transcode_script, output_path or "-"]

    def metadata_argv(self, url: str) -> list[str]:
        return [sys.executable, "-c", self.info_script, url]
