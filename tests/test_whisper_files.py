"""
Runs whisper_migrate.py on whisper files created with the whisper
library and verifies the line protocol files it writes, from the
archive reader up to the command line.
"""

import gzip
import json
import os
import time
from typing import Any, Dict, List, Tuple

import pytest
import whisper
import yaml

import whisper_migrate as wm

NOW = int(time.time())
# aligned on the minute and well within a one hour retention
BASE = NOW - NOW % 60 - 600


def create_wsp(
    path: str,
    points: List[Tuple[int, float]],
    archives: Tuple[Tuple[int, int], ...] = ((60, 60),),
) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    whisper.create(path, list(archives), xFilesFactor=0)
    whisper.update_many(path, points)


def data_lines(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        lines = f.read().splitlines()
    return sorted(line for line in lines if line and not line.startswith("#"))


class TestWhisperArchive:
    def test_dump(self, tmp_path: Any) -> None:
        path = str(tmp_path / "load.wsp")
        create_wsp(path, [(BASE, 1.5), (BASE + 60, 2.25)], archives=((60, 30),))

        with wm.WhisperArchive.open(path) as archive:
            assert [a.seconds_per_point for a in archive.archives] == [60]
            samples = archive.dump(0)

        assert len(samples) == 30
        written = sorted(
            (s.timestamp, s.value) for s in samples if s.timestamp != 0
        )
        assert written == [(BASE, 1.5), (BASE + 60, 2.25)]

    def test_archives_in_header_order(self, tmp_path: Any) -> None:
        path = str(tmp_path / "load.wsp")
        create_wsp(path, [(BASE, 1.0)], archives=((60, 60), (300, 24)))
        with wm.WhisperArchive.open(path) as archive:
            assert [a.seconds_per_point for a in archive.archives] == [60, 300]
            assert [a.index for a in archive.archives] == [0, 1]

    def test_missing_file(self, tmp_path: Any) -> None:
        with pytest.raises(wm.ArchiveOpenError):
            wm.WhisperArchive.open(str(tmp_path / "missing.wsp"))

    def test_corrupt_file(self, tmp_path: Any) -> None:
        path = tmp_path / "corrupt.wsp"
        path.write_bytes(b"garbage")
        with pytest.raises(wm.ArchiveOpenError):
            wm.WhisperArchive.open(str(path))

    def test_truncated_archive(self, tmp_path: Any) -> None:
        path = str(tmp_path / "load.wsp")
        create_wsp(path, [(BASE, 1.0)], archives=((60, 30),))
        with open(path, "r+b") as f:
            f.truncate(os.path.getsize(path) - whisper.pointSize)

        with wm.WhisperArchive.open(path) as archive:
            with pytest.raises(wm.ArchiveDecodeError):
                archive.dump(0)


class TestCommandLine:
    """
    Creates a small whisper tree, a rules file and a yaml
    configuration, then runs `main` on them.
    """

    @pytest.fixture
    def workspace(self, tmp_path: Any) -> Dict[str, str]:
        wsp_path = tmp_path / "whisper"
        create_wsp(
            str(wsp_path / "stats" / "server1" / "load.wsp"),
            [(BASE, 1.5), (BASE + 60, 0.0), (BASE + 120, 2.25)],
        )
        create_wsp(
            str(wsp_path / "stats" / "server2" / "load.wsp"),
            [(BASE, 4.0)],
        )
        create_wsp(str(wsp_path / "carbon" / "agents" / "cpu.wsp"), [(BASE, 1.0)])

        rules_file = tmp_path / "rules.json"
        rules_file.write_text(
            json.dumps(
                [
                    {
                        "pattern": "stats.{{ host }}.load",
                        "measurement": "",
                        "tags": [{"tagkey": "host", "tagvalue": "{{ host }}"}],
                        "field": "",
                    }
                ]
            )
        )

        export_path = tmp_path / "export"
        config_file = tmp_path / "conf.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "WSP_PATH": str(wsp_path),
                    "EXPORT_PATH": str(export_path),
                    "RULES_FILE": str(rules_file),
                    "DATABASE": "telegraf",
                    "RETENTIONS": "autogen",
                }
            )
        )
        return {"config_file": str(config_file), "export_path": str(export_path)}

    def test_export(self, workspace: Dict[str, str], capsys: Any) -> None:
        assert wm.main([workspace["config_file"], "--yes"]) == 0

        export_path = workspace["export_path"]
        assert os.listdir(export_path) == ["60-autogen.txt"]
        output = os.path.join(export_path, "60-autogen.txt")
        with open(output, "r", encoding="utf-8") as f:
            header = [f.readline() for _ in range(4)]
        assert header == [
            "# DML\n",
            "# CONTEXT-DATABASE: telegraf\n",
            "# CONTEXT-RETENTION-POLICY: autogen\n",
            "\n",
        ]
        assert data_lines(output) == sorted(
            [
                f"load,host=server1 value=90 {BASE}",
                f"load,host=server1 value=135 {BASE + 120}",
                f"load,host=server2 value=240 {BASE}",
            ]
        )
        assert "Exporting 2 series to" in capsys.readouterr().out

    def test_flags_override_config(self, workspace: Dict[str, str]) -> None:
        argv = [
            workspace["config_file"],
            "--yes",
            "--no-scale",
            "--gz",
            "--from", str(BASE + 60),
            "--retentions", "",
        ]
        assert wm.main(argv) == 0

        output = os.path.join(workspace["export_path"], "60-60.txt.gz")
        with gzip.open(output, "rt", encoding="utf-8") as f:
            lines = f.read().splitlines()
        assert lines[2] == "# CONTEXT-RETENTION-POLICY: 60"
        assert [line for line in lines[4:] if line] == [
            f"load,host=server1 value=2.25 {BASE + 120}"
        ]

    def test_export_zeros(self, workspace: Dict[str, str]) -> None:
        argv = [
            workspace["config_file"],
            "--yes",
            "--zeros",
            "--from", str(BASE),
            "--until", str(BASE + 120),
        ]
        assert wm.main(argv) == 0
        output = os.path.join(workspace["export_path"], "60-autogen.txt")
        assert f"load,host=server1 value=0 {BASE + 60}" in data_lines(output)

    def test_declined_confirmation(
        self, workspace: Dict[str, str], monkeypatch: Any
    ) -> None:
        answers = iter(["maybe", "n"])
        monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
        assert wm.main([workspace["config_file"]]) == 1
        assert not os.path.exists(workspace["export_path"])

    def test_write_error_aborts(
        self, workspace: Dict[str, str], tmp_path: Any, capsys: Any
    ) -> None:
        not_a_dir = tmp_path / "export_file"
        not_a_dir.write_text("")
        argv = [workspace["config_file"], "--yes", "--export-path", str(not_a_dir)]
        assert wm.main(argv) == 1
        out = capsys.readouterr().out
        assert "ERROR: Failed to create" in out
        assert "Aborting." in out

    def test_config_error(self, tmp_path: Any, capsys: Any) -> None:
        config_file = tmp_path / "conf.yaml"
        config_file.write_text(yaml.safe_dump({"WSP_PATH": str(tmp_path)}))
        assert wm.main([str(config_file), "--yes"]) == 1
        assert "ERROR: No EXPORT_PATH" in capsys.readouterr().out

    def test_flags_only(self, workspace: Dict[str, str], tmp_path: Any) -> None:
        rules_file = str(tmp_path / "rules.json")
        export_path = str(tmp_path / "flags_export")
        argv = [
            "--wsp-path", str(tmp_path / "whisper"),
            "--export-path", export_path,
            "--rules-file", rules_file,
            "--yes",
        ]
        assert wm.main(argv) == 0
        assert os.listdir(export_path) == ["60-60.txt"]
