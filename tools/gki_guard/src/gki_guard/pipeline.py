"""Linear GKI build: fetch, patch, brand, compile, KMI-check, package, publish.

Every external tool (git, make, the kernel's ``scripts/config``, the
KernelSU setup script) is invoked through ``run_command``; a non-zero exit
aborts the build. The only in-process logic is the KMI gate, which runs the
checker from :mod:`gki_guard.kmi` between compiling and packaging.
"""
from __future__ import annotations

import datetime as dt
import logging
import os
import re
import shutil
import subprocess
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence

import requests

from .config import (
    BuildConfig,
    BuildEnvironment,
    build_timezone,
    internal_brand,
    release_name,
    render_zip_name,
    simplify_gh_url,
)
from .core import AbiDriftDetected, BuildError, GkiGuardError, ParseError
from .kmi import check_files, format_report
from .telegram import TelegramNotifier

log = logging.getLogger(__name__)

KERNELSU_DRIVER_PATHS = ("drivers/staging/kernelsu", "drivers/kernelsu", "KernelSU")
KERNELSU_TAGS_URL = "https://api.github.com/repos/KernelSU-Next/KernelSU-Next/tags"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

Runner = Callable[..., str]


def configure_logging(log_path: Path | None, verbose: bool = False) -> None:
    root = logging.getLogger("gki_guard")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, "%H:%M:%S"))
    root.addHandler(console)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)


def run_command(command: Sequence[str], cwd: Path | None = None, env: Mapping[str, str] | None = None) -> str:
    printable = " ".join(str(part) for part in command)
    log.debug("$ %s", printable)
    try:
        proc = subprocess.run(
            [str(part) for part in command],
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        raise BuildError(f"Unable to run '{printable}': {exc}") from exc

    for line in proc.stdout.splitlines():
        log.debug("%s", line)
    if proc.returncode != 0:
        details = (proc.stderr.strip() or proc.stdout.strip()).splitlines()[-20:]
        raise BuildError(f"'{printable}' exited with status {proc.returncode}: " + "\n".join(details))
    for line in proc.stderr.splitlines():
        log.debug("%s", line)
    return proc.stdout


def download(url: str, destination: Path, session: requests.Session) -> Path:
    log.info("Downloading %s", url)
    try:
        response = session.get(url, stream=True, timeout=60)
        response.raise_for_status()
        destination.parent.mkdir(parents=True, exist_ok=True)
        with destination.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    handle.write(chunk)
    except requests.exceptions.RequestException as exc:
        if destination.exists():
            destination.unlink()
        raise BuildError(f"Download of '{url}' failed: {exc}") from exc
    return destination


def extract_tarball(archive: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive) as tar:
            tar.extractall(destination, filter="data")
    except (tarfile.TarError, OSError) as exc:
        raise BuildError(f"Unable to extract '{archive}': {exc}") from exc
    flatten_single_directory(destination)


def flatten_single_directory(directory: Path) -> None:
    """Move the contents of a lone top-level directory up into ``directory``."""
    children = list(directory.iterdir())
    if len(children) != 1 or not children[0].is_dir():
        return
    inner = children[0]
    for item in inner.iterdir():
        shutil.move(str(item), str(directory / item.name))
    inner.rmdir()


def strip_lines_containing(path: Path, needle: str) -> None:
    if not path.is_file():
        return
    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    path.write_text("".join(line for line in lines if needle not in line), encoding="utf-8")


def remove_kernelsu_drivers(ksrc: Path) -> list[str]:
    removed: list[str] = []
    for rel_path in KERNELSU_DRIVER_PATHS:
        driver = ksrc / rel_path
        if not driver.is_dir():
            continue
        log.info("KernelSU driver found in %s, removing", rel_path)
        strip_lines_containing(driver.parent / "Kconfig", "kernelsu")
        strip_lines_containing(driver.parent / "Makefile", "kernelsu")
        shutil.rmtree(driver)
        removed.append(rel_path)
    return removed


def set_kernel_string(anykernel_script: Path, value: str) -> None:
    content = anykernel_script.read_text(encoding="utf-8")
    content = re.sub(r"^kernel\.string=.*$", lambda _: f"kernel.string={value}", content, flags=re.M)
    anykernel_script.write_text(content, encoding="utf-8")


def make_zip(source_dir: Path, zip_path: Path) -> Path:
    """Zip ``source_dir`` like ``zip -r9 out.zip ./*``: hidden top-level entries are skipped."""
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for path in sorted(source_dir.rglob("*")):
            rel = path.relative_to(source_dir)
            if rel.parts[0].startswith("."):
                continue
            archive.write(path, rel.as_posix())
    return zip_path


def append_github_env(path: Path | None, key: str, value: str) -> None:
    if path is None:
        log.debug("GITHUB_ENV is not set; skipping %s", key)
        return
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{key}={value}\n")


def compiler_string(clang_version_output: str) -> str:
    first = clang_version_output.splitlines()[0] if clang_version_output.strip() else "unknown"
    first = re.sub(r"\(https..*", "", first)
    return first.replace(" version", "").strip()


@dataclass
class BuildState:
    ksrc: Path
    linux_version: str = ""
    defconfig_path: Path | None = None
    cross_compile: str = "aarch64-linux-gnu-"
    tool_paths: tuple[Path, ...] = ()
    compiler: str = ""
    kernelsu_version: str = ""
    release_name: str = ""
    timestamp: dt.datetime | None = None
    message_id: int | None = None
    zip_path: Path | None = None


class GkiBuild:
    def __init__(
        self,
        config: BuildConfig,
        env: BuildEnvironment,
        workdir: Path,
        notifier: TelegramNotifier | None = None,
        runner: Runner = run_command,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.env = env
        self.workdir = workdir
        self.notifier = notifier
        self.runner = runner
        self.session = session or requests.Session()
        self.state = BuildState(ksrc=workdir / "ksrc")

    @property
    def log_path(self) -> Path:
        return self.workdir / "build.log"

    def stages(self) -> list[tuple[str, Callable[[], bool]]]:
        return [
            ("clone_kernel", self.clone_kernel),
            ("prepare_toolchain", self.prepare_toolchain),
            ("install_kernelsu", self.install_kernelsu),
            ("apply_branding", self.apply_branding),
            ("announce", self.announce),
            ("configure", self.configure),
            ("compile", self.compile),
            ("check_kmi", self.check_kmi),
            ("package", self.package),
            ("publish", self.publish),
        ]

    def run(self) -> None:
        for name, stage in self.stages():
            log.info("==> %s", name)
            try:
                proceed = stage()
            except GkiGuardError as exc:
                log.error("Build failed at stage %s: %s", name, exc)
                if isinstance(exc, BuildError) and exc.stage is None:
                    exc.stage = name
                self.report_failure(name, exc)
                raise
            if not proceed:
                log.info("Stopping after stage %s", name)
                return

    def report_failure(self, stage: str, exc: Exception) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_message(
                f"Build failed at stage {stage}: {exc}", reply_to=self.state.message_id, parse_mode=None
            )
        except GkiGuardError as notify_exc:
            log.warning("Failure notification was not delivered: %s", notify_exc)

    def child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        path_entries = [str(path) for path in self.state.tool_paths]
        env["PATH"] = os.pathsep.join(path_entries + [env.get("PATH", "")])
        env["TZ"] = self.config.timezone
        env["KBUILD_BUILD_USER"] = self.config.build_user
        env["KBUILD_BUILD_HOST"] = self.config.build_host
        if self.state.timestamp is not None:
            env["KBUILD_BUILD_TIMESTAMP"] = self.state.timestamp.strftime("%a %b %d %H:%M:%S %Z %Y")
        return env

    def make_flags(self) -> list[str]:
        return [
            f"-j{os.cpu_count() or 1}",
            "ARCH=arm64",
            "LLVM=1",
            "LLVM_IAS=1",
            "O=out",
            f"CROSS_COMPILE={self.state.cross_compile}",
        ]

    def kconfig(self, *options: str) -> None:
        if self.state.defconfig_path is None:
            raise BuildError("Defconfig has not been located yet.")
        script = self.state.ksrc / "scripts" / "config"
        if not script.exists():
            script = self.state.ksrc / "common" / "scripts" / "config"
        self.runner([str(script), "--file", str(self.state.defconfig_path), *options], cwd=self.state.ksrc)

    def find_defconfig(self) -> Path:
        for configs_dir in ("arch/arm64/configs", "common/arch/arm64/configs"):
            root = self.state.ksrc / configs_dir
            if not root.is_dir():
                continue
            matches = sorted(root.rglob(self.config.kernel_defconfig))
            if matches:
                return matches[0]
        raise BuildError(f"Defconfig '{self.config.kernel_defconfig}' was not found in the kernel source.")

    def clone_kernel(self) -> bool:
        log.info("Cloning kernel source from %s", simplify_gh_url(self.config.kernel_repo))
        self.runner(
            ["git", "clone", "-q", "--depth=1", self.config.kernel_repo, "-b", self.config.kernel_branch, str(self.state.ksrc)],
            cwd=self.workdir,
        )
        self.state.linux_version = self.runner(["make", "-s", "kernelversion"], cwd=self.state.ksrc).strip()
        self.state.defconfig_path = self.find_defconfig()
        log.info("Linux version %s, defconfig %s", self.state.linux_version, self.state.defconfig_path)
        return True

    def prepare_toolchain(self) -> bool:
        clang_dir = self.workdir / "clang"
        if self.config.clang_branch:
            log.info("Cloning Clang")
            self.runner(
                ["git", "clone", "--depth=1", "-q", self.config.clang_url, "-b", self.config.clang_branch, str(clang_dir)],
                cwd=self.workdir,
            )
        else:
            log.info("Downloading Clang")
            tarball = download(self.config.clang_url, self.workdir / "clang.tarball", self.session)
            extract_tarball(tarball, clang_dir)
            tarball.unlink()

        tool_paths = [clang_dir / "bin"]
        clang_bin = clang_dir / "bin"
        has_gnu_binutils = clang_bin.is_dir() and any(
            entry.name.startswith("aarch64-linux-gnu") for entry in clang_bin.iterdir()
        )
        if has_gnu_binutils:
            self.state.cross_compile = "aarch64-linux-gnu-"
        else:
            log.info("Cloning GCC")
            gcc_dir = self.workdir / "gcc"
            self.runner(["git", "clone", "--depth=1", "-q", self.config.gcc_repo, str(gcc_dir)], cwd=self.workdir)
            tool_paths.append(gcc_dir / "bin")
            self.state.cross_compile = "aarch64-linux-"

        self.state.tool_paths = tuple(tool_paths)
        self.state.compiler = compiler_string(self.runner(["clang", "--version"], env=self.child_env()))
        return True

    def install_kernelsu(self) -> bool:
        ksrc = self.state.ksrc
        remove_kernelsu_drivers(ksrc)

        repo = self.config.kernelsu_repo
        script_url = f"https://raw.githubusercontent.com/{repo}/main/kernel/setup.sh"
        setup_script = download(script_url, self.workdir / "kernelsu-setup.sh", self.session)
        log.info("Installing KernelSU from %s (%s)", repo, self.config.kernelsu_ref)
        self.runner(["bash", str(setup_script), self.config.kernelsu_ref], cwd=ksrc)

        checkout = ksrc / repo.rsplit("/", 1)[-1]
        if checkout.is_dir():
            self.state.kernelsu_version = self.runner(
                ["git", "-C", str(checkout), "describe", "--tags", "--always"], cwd=ksrc
            ).strip()
        self.kconfig("--enable", "CONFIG_KSU")
        self.kconfig("--disable", "CONFIG_KSU_MANUAL_SU")
        self.kconfig("--disable", "CONFIG_KSU_SUSFS")
        return True

    def apply_branding(self) -> bool:
        brand = internal_brand(self.config, self.env)
        self.state.release_name = release_name(self.config, self.env, self.state.linux_version)

        gki_build_config = self.state.ksrc / "common" / "build.config.gki"
        if gki_build_config.is_file():
            log.info("Patching build.config.gki for branding")
            content = gki_build_config.read_text(encoding="utf-8")
            gki_build_config.write_text(content.replace("check_defconfig", ""), encoding="utf-8")

        self.kconfig("--set-str", "CONFIG_LOCALVERSION", brand)
        self.kconfig("--disable", "CONFIG_LOCALVERSION_AUTO")
        log.info("Internal kernel version set to: %s%s", self.state.linux_version, brand)
        log.info("User-facing release name set to: %s", self.state.release_name)
        return True

    def announce(self) -> bool:
        self.state.timestamp = dt.datetime.now(build_timezone(self.config))
        text = "\n".join(
            [
                f"*==== {self.config.kernel_name} Builder ====*",
                f"🐧 *Linux Version*: {self.state.linux_version}",
                f"📅 *Build Date*: {self.state.timestamp:%a %b %d %H:%M:%S %Y}",
                f"📛 *KernelSU*: {self.config.variant} | {self.state.kernelsu_version or 'unknown'}",
                f"🔰 *Compiler*: {self.state.compiler}",
            ]
        )
        if self.notifier is None:
            log.info("No notifier configured; build banner:\n%s", text)
            return True
        self.state.message_id = self.notifier.send_message(text)
        if self.state.message_id is not None:
            append_github_env(self.env.github_env, "MESSAGE_ID", str(self.state.message_id))
        return True

    def configure(self) -> bool:
        log.info("Generating config")
        self.runner(["make", *self.make_flags(), self.config.kernel_defconfig], cwd=self.state.ksrc, env=self.child_env())
        if self.env.todo != "defconfig":
            return True

        dot_config = self.state.ksrc / "out" / ".config"
        log.info("Uploading defconfig")
        if self.notifier is not None:
            self.notifier.send_document(dot_config, reply_to=self.state.message_id)
        return False

    def compile(self) -> bool:
        log.info("Building kernel")
        self.runner(["make", *self.make_flags(), "Image", "modules"], cwd=self.state.ksrc, env=self.child_env())
        return True

    def check_kmi(self) -> bool:
        if not self.config.kmi_enabled:
            log.info("KMI check disabled in config")
            return True
        manifest = self.state.ksrc / self.config.kmi_manifest
        if not manifest.exists() and (self.state.ksrc / "common" / self.config.kmi_manifest).exists():
            manifest = self.state.ksrc / "common" / self.config.kmi_manifest
        symvers = self.state.ksrc / self.config.kmi_symvers
        try:
            result = check_files(manifest, symvers)
        except ParseError as exc:
            raise BuildError(f"KMI check could not run: {exc}") from exc
        for line in format_report(result):
            log.info("%s", line)
        if not result.passed:
            raise AbiDriftDetected(result)
        return True

    def package(self) -> bool:
        anykernel = self.workdir / "anykernel"
        log.info("Cloning anykernel from %s", simplify_gh_url(self.config.anykernel_repo))
        self.runner(
            ["git", "clone", "-q", "--depth=1", self.config.anykernel_repo, "-b", self.config.anykernel_branch, str(anykernel)],
            cwd=self.workdir,
        )

        timestamp = self.state.timestamp or dt.datetime.now(build_timezone(self.config))
        if self.env.is_beta:
            build_date = f"{timestamp:%Y%m%d-%H%M}"
            kernel_string = f"{self.state.release_name} ({build_date})"
        else:
            build_date = None
            kernel_string = self.state.release_name
        set_kernel_string(anykernel / "anykernel.sh", kernel_string)

        image = self.state.ksrc / "out" / "arch" / "arm64" / "boot" / "Image"
        if not image.is_file():
            raise BuildError(f"Kernel image '{image}' was not produced.")
        shutil.copy2(image, anykernel / "Image")

        zip_name = render_zip_name(self.config.zip_name, self.state.linux_version, self.config.variant, build_date)
        log.info("Zipping anykernel into %s", zip_name)
        self.state.zip_path = make_zip(anykernel, self.workdir / zip_name)
        return True

    def latest_kernelsu_tag(self) -> str:
        try:
            response = self.session.get(KERNELSU_TAGS_URL, timeout=30)
            response.raise_for_status()
            tags = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise BuildError(f"Unable to query KernelSU-Next tags: {exc}") from exc
        if not tags:
            return ""
        return tags[0].get("name", "")

    def publish(self) -> bool:
        zip_path = self.state.zip_path
        if zip_path is None:
            raise BuildError("Nothing to publish: package stage produced no zip.")

        if self.env.is_beta:
            if self.notifier is not None:
                self.notifier.reply_document(self.state.message_id, zip_path)
                self.notifier.reply_document(self.state.message_id, self.log_path)
            else:
                log.info("Beta build ready: %s", zip_path)
            return True

        append_github_env(self.env.github_env, "BASE_NAME", f"{self.config.kernel_name}-{self.config.variant}")
        artifacts = self.workdir / "artifacts"
        artifacts.mkdir(parents=True, exist_ok=True)
        self.state.zip_path = Path(shutil.move(str(zip_path), str(artifacts / zip_path.name)))

        if self.env.last_build:
            info = [
                f"LINUX_VERSION={self.state.linux_version}",
                f"KSU_NEXT_VERSION={self.latest_kernelsu_tag()}",
                f"KERNEL_NAME={self.config.kernel_name}",
                f"RELEASE_REPO={simplify_gh_url(self.config.release_repo)}",
            ]
            with (artifacts / "info.txt").open("a", encoding="utf-8") as handle:
                handle.write("\n".join(info) + "\n")
        log.info("Build succeeded: %s", self.state.zip_path)
        return True
