from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from gki_guard.config import (  # noqa: E402
    BuildEnvironment,
    build_config_from_payload,
    internal_brand,
    load_build_config,
    release_name,
    render_zip_name,
    simplify_gh_url,
)
from gki_guard.core import ConfigError, GkiGuardError, write_json  # noqa: E402


def sample_payload() -> dict[str, object]:
    return {
        "kernel_name": "SuiKernel",
        "build_user": "KanagawaYamada",
        "build_host": "HoshimachiSuisei",
        "timezone": "Asia/Jakarta",
        "release_repo": "https://github.com/LoggingNewMemory/SuiKernel-Release",
        "kernel": {
            "repo": "https://github.com/LoggingNewMemory/SuiKernel-android12-5.10",
            "branch": "suikernel-main",
            "defconfig": "gki_defconfig",
        },
        "anykernel": {"repo": "https://github.com/LoggingNewMemory/SuiKernel-anykernel", "branch": "gki"},
        "clang": {
            "url": "https://github.com/LineageOS/android_prebuilts_clang_kernel_linux-x86_clang-r416183b",
            "branch": "lineage-20.0",
        },
        "zip_name": "SuiKernel-KVER-VARIANT-BUILD_DATE.zip",
    }


class BuildConfigTests(unittest.TestCase):
    def test_payload_maps_to_frozen_config(self) -> None:
        config = build_config_from_payload(sample_payload())
        self.assertEqual(config.kernel_name, "SuiKernel")
        self.assertEqual(config.kernel_branch, "suikernel-main")
        self.assertEqual(config.clang_branch, "lineage-20.0")
        self.assertEqual(config.kmi_manifest, "android/abi_gki_aarch64.xml")
        self.assertEqual(config.kmi_symvers, "out/Module.symvers")
        self.assertTrue(config.kmi_enabled)
        self.assertEqual(config.variant, "KSUN")
        with self.assertRaises(Exception):
            config.kernel_name = "Other"  # type: ignore[misc]

    def test_missing_required_section_is_rejected(self) -> None:
        payload = sample_payload()
        del payload["anykernel"]
        with self.assertRaisesRegex(ConfigError, "anykernel"):
            build_config_from_payload(payload)

    def test_wrong_type_is_rejected(self) -> None:
        payload = sample_payload()
        payload["kmi"] = {"enabled": "yes"}
        with self.assertRaises(ConfigError):
            build_config_from_payload(payload)

    def test_load_from_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            path = Path(temp) / "config.json"
            payload = sample_payload()
            payload["kmi"] = {"enabled": False, "manifest": "android/abi_gki_aarch64.stg"}
            write_json(path, payload)
            config = load_build_config(path)
            self.assertFalse(config.kmi_enabled)
            self.assertEqual(config.kmi_manifest, "android/abi_gki_aarch64.stg")

    def test_load_invalid_json(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            path = Path(temp) / "config.json"
            path.write_text("{", encoding="utf-8")
            with self.assertRaises(GkiGuardError):
                load_build_config(path)


class BuildEnvironmentTests(unittest.TestCase):
    def test_defaults(self) -> None:
        env = BuildEnvironment.from_environ({})
        self.assertEqual(env.release_tag, "HSKY4")
        self.assertEqual(env.todo, "kernel")
        self.assertFalse(env.last_build)
        self.assertFalse(env.is_beta)
        self.assertIsNone(env.github_env)
        self.assertIsNone(env.telegram_token)

    def test_ci_values(self) -> None:
        env = BuildEnvironment.from_environ(
            {
                "GITHUB_REF_NAME": "v1.2",
                "GITHUB_ENV": "/tmp/github_env",
                "STATUS": "BETA",
                "TODO": "defconfig",
                "LAST_BUILD": "true",
                "TOKEN": "123:abc",
                "CHATID": "-100",
            }
        )
        self.assertEqual(env.release_tag, "v1.2")
        self.assertEqual(env.github_env, Path("/tmp/github_env"))
        self.assertTrue(env.is_beta)
        self.assertEqual(env.todo, "defconfig")
        self.assertTrue(env.last_build)
        self.assertEqual(env.telegram_token, "123:abc")
        self.assertEqual(env.telegram_chat_id, "-100")


class NamingTests(unittest.TestCase):
    def test_render_zip_name_for_beta(self) -> None:
        self.assertEqual(
            render_zip_name("SuiKernel-KVER-VARIANT-BUILD_DATE.zip", "5.10.236", "KSUN", "20261019-0930"),
            "SuiKernel-5.10.236-KSUN-20261019-0930.zip",
        )

    def test_render_zip_name_for_release_drops_date(self) -> None:
        self.assertEqual(
            render_zip_name("SuiKernel-KVER-VARIANT-BUILD_DATE.zip", "5.10.236", "KSUN", None),
            "SuiKernel-5.10.236-KSUN.zip",
        )

    def test_branding(self) -> None:
        config = build_config_from_payload(sample_payload())
        env = BuildEnvironment(release_tag="v3")
        self.assertEqual(internal_brand(config, env), "-SuiKernel-v3-KSUN")
        self.assertEqual(release_name(config, env, "5.10.236"), "SuiKernel-v3-5.10.236-KSUN")

    def test_simplify_gh_url(self) -> None:
        self.assertEqual(simplify_gh_url("https://github.com/owner/repo.git"), "owner/repo")
        self.assertEqual(simplify_gh_url("https://gitlab.com/owner/repo"), "https://gitlab.com/owner/repo")


if __name__ == "__main__":
    unittest.main()
