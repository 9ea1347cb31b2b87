from __future__ import annotations

import contextlib
import io
import json
import sys
import tempfile
import unittest
from pathlib import Path

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from gki_guard import cli  # noqa: E402


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.manifest = self.root / "abi.json"
        self.manifest.write_text(
            json.dumps({"symbols": [{"name": "foo", "crc": "abc123"}, {"name": "baz", "crc": "111"}]}),
            encoding="utf-8",
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _record(self, content: str) -> Path:
        path = self.root / "Module.symvers"
        path.write_text(content, encoding="utf-8")
        return path

    def _run(self, entry, argv: list[str]) -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            code = entry(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_kmi_check_pass(self) -> None:
        record = self._record("foo abc123\nbaz 111\nbar zzz\n")
        code, out, _ = self._run(cli.kmi_check_main, [str(self.manifest), str(record)])
        self.assertEqual(code, 0)
        self.assertIn("KMI check status: pass", out)

    def test_kmi_check_drift_exits_one_and_names_symbols(self) -> None:
        record = self._record("foo xyz999\n")
        code, out, _ = self._run(cli.kmi_check_main, [str(self.manifest), str(record)])
        self.assertEqual(code, 1)
        self.assertIn("  - baz", out)
        self.assertIn("  - foo: expected abc123, observed xyz999", out)

    def test_kmi_check_parse_error_exits_two(self) -> None:
        self.manifest.write_text("<abi-corpus path='vmlinux'><elf-function-symbols>", encoding="utf-8")
        record = self._record("foo abc123\n")
        code, out, err = self._run(cli.kmi_check_main, [str(self.manifest), str(record)])
        self.assertEqual(code, 2)
        self.assertEqual(out, "")
        self.assertIn("kmi-check error:", err)

    def test_check_subcommand_writes_reports(self) -> None:
        record = self._record("foo xyz999\n")
        report = self.root / "out" / "kmi.json"
        markdown = self.root / "out" / "kmi.md"
        code, _, _ = self._run(
            cli.main,
            ["check", str(self.manifest), str(record), "--report", str(report), "--markdown-report", str(markdown)],
        )
        self.assertEqual(code, 1)
        payload = json.loads(report.read_text(encoding="utf-8"))
        self.assertEqual(payload["status"], "fail")
        self.assertEqual(payload["missing"], ["baz"])
        self.assertEqual(payload["mismatched"], {"foo": {"expected": "abc123", "observed": "xyz999"}})
        text = markdown.read_text(encoding="utf-8")
        self.assertIn("# KMI Report (fail)", text)
        self.assertIn("| `foo` | `abc123` | `xyz999` |", text)

    def test_zip_name_subcommand(self) -> None:
        config = self.root / "config.json"
        config.write_text(
            json.dumps(
                {
                    "kernel_name": "SuiKernel",
                    "kernel": {"repo": "https://github.com/x/k", "branch": "main", "defconfig": "gki_defconfig"},
                    "anykernel": {"repo": "https://github.com/x/ak", "branch": "gki"},
                    "clang": {"url": "https://example.com/clang.tar.gz"},
                    "zip_name": "SuiKernel-KVER-VARIANT-BUILD_DATE.zip",
                }
            ),
            encoding="utf-8",
        )
        code, out, _ = self._run(cli.main, ["zip-name", "--config", str(config), "--linux-version", "5.10.236"])
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), "SuiKernel-5.10.236-KSUN.zip")


if __name__ == "__main__":
    unittest.main()
