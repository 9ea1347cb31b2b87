from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .core import ConfigError, load_json, require_dict, require_str, validate_with_jsonschema

DEFAULT_RELEASE_TAG = "HSKY4"
DEFAULT_KMI_MANIFEST = "android/abi_gki_aarch64.xml"
DEFAULT_KMI_SYMVERS = "out/Module.symvers"
DEFAULT_GCC_REPO = "https://github.com/LineageOS/android_prebuilts_gcc_linux-x86_aarch64_aarch64-linux-gnu-9.3"
DEFAULT_KERNELSU_REPO = "pershoot/KernelSU-Next"
DEFAULT_KERNELSU_REF = "stable"
DEFAULT_VARIANT = "KSUN"


@dataclass(frozen=True)
class BuildEnvironment:
    """Values the CI runner provides through the process environment."""

    release_tag: str = DEFAULT_RELEASE_TAG
    status: str = ""
    todo: str = "kernel"
    last_build: bool = False
    github_env: Path | None = None
    telegram_token: str | None = None
    telegram_chat_id: str | None = None

    @property
    def is_beta(self) -> bool:
        return self.status == "BETA"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "BuildEnvironment":
        env = os.environ if environ is None else environ
        github_env = env.get("GITHUB_ENV")
        return cls(
            release_tag=env.get("GITHUB_REF_NAME") or DEFAULT_RELEASE_TAG,
            status=env.get("STATUS", ""),
            todo=env.get("TODO") or "kernel",
            last_build=env.get("LAST_BUILD", "").lower() == "true",
            github_env=Path(github_env) if github_env else None,
            telegram_token=env.get("TOKEN") or None,
            telegram_chat_id=env.get("CHATID") or env.get("CHAT_ID") or None,
        )


@dataclass(frozen=True)
class BuildConfig:
    kernel_name: str
    kernel_repo: str
    kernel_branch: str
    kernel_defconfig: str
    anykernel_repo: str
    anykernel_branch: str
    clang_url: str
    clang_branch: str | None
    zip_name: str
    build_user: str = "builder"
    build_host: str = "localhost"
    timezone: str = "UTC"
    release_repo: str = ""
    gcc_repo: str = DEFAULT_GCC_REPO
    kernelsu_repo: str = DEFAULT_KERNELSU_REPO
    kernelsu_ref: str = DEFAULT_KERNELSU_REF
    variant: str = DEFAULT_VARIANT
    kmi_enabled: bool = True
    kmi_manifest: str = DEFAULT_KMI_MANIFEST
    kmi_symvers: str = DEFAULT_KMI_SYMVERS


def build_config_from_payload(payload: dict[str, Any]) -> BuildConfig:
    validate_with_jsonschema("config", payload, error_cls=ConfigError)

    kernel = require_dict(payload.get("kernel"), "kernel")
    anykernel = require_dict(payload.get("anykernel"), "anykernel")
    clang = require_dict(payload.get("clang"), "clang")
    gcc = payload.get("gcc") or {}
    kernelsu = payload.get("kernelsu") or {}
    kmi = payload.get("kmi") or {}

    return BuildConfig(
        kernel_name=require_str(payload.get("kernel_name"), "kernel_name"),
        kernel_repo=require_str(kernel.get("repo"), "kernel.repo"),
        kernel_branch=require_str(kernel.get("branch"), "kernel.branch"),
        kernel_defconfig=require_str(kernel.get("defconfig"), "kernel.defconfig"),
        anykernel_repo=require_str(anykernel.get("repo"), "anykernel.repo"),
        anykernel_branch=require_str(anykernel.get("branch"), "anykernel.branch"),
        clang_url=require_str(clang.get("url"), "clang.url"),
        clang_branch=clang.get("branch") or None,
        zip_name=require_str(payload.get("zip_name"), "zip_name"),
        build_user=payload.get("build_user", "builder"),
        build_host=payload.get("build_host", "localhost"),
        timezone=payload.get("timezone", "UTC"),
        release_repo=payload.get("release_repo", ""),
        gcc_repo=gcc.get("repo", DEFAULT_GCC_REPO),
        kernelsu_repo=kernelsu.get("repo", DEFAULT_KERNELSU_REPO),
        kernelsu_ref=kernelsu.get("ref", DEFAULT_KERNELSU_REF),
        variant=kernelsu.get("variant", DEFAULT_VARIANT),
        kmi_enabled=bool(kmi.get("enabled", True)),
        kmi_manifest=kmi.get("manifest", DEFAULT_KMI_MANIFEST),
        kmi_symvers=kmi.get("symvers", DEFAULT_KMI_SYMVERS),
    )


def load_build_config(path: Path) -> BuildConfig:
    return build_config_from_payload(load_json(path))


def render_zip_name(template: str, linux_version: str, variant: str, build_date: str | None) -> str:
    """Fill the KVER/VARIANT/BUILD_DATE placeholders of a zip name template.

    Without a build date (release builds) the ``-BUILD_DATE`` part is dropped.
    """
    name = template.replace("KVER", linux_version).replace("VARIANT", variant)
    if build_date:
        return name.replace("BUILD_DATE", build_date)
    name = name.replace("-BUILD_DATE", "")
    return name.replace("BUILD_DATE", "")


def simplify_gh_url(url: str) -> str:
    return re.sub(r"^https?://github\.com/", "", url).removesuffix(".git")


def internal_brand(config: BuildConfig, env: BuildEnvironment) -> str:
    return f"-{config.kernel_name}-{env.release_tag}-{config.variant}"


def release_name(config: BuildConfig, env: BuildEnvironment, linux_version: str) -> str:
    return f"{config.kernel_name}-{env.release_tag}-{linux_version}-{config.variant}"


def build_timezone(config: BuildConfig) -> ZoneInfo:
    try:
        return ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone '{config.timezone}'.") from exc
