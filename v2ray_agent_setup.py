#!/usr/bin/env python3
"""
v2ray-agent Setup
--------------------------------------------------

Provisions a proxy-tunnel host running Xray-core and sing-box. The script
detects the OS family, installs the native build and network packages, opens
the firewall, installs acme.sh, fetches both proxy cores from their latest
GitHub releases, registers them as systemd services and installs the ``vasma``
management command.

Supported systems: OpenCloudOS 9.x, CentOS/Rocky/AlmaLinux/Oracle 7+,
Ubuntu 18.04+, Debian 10+ on x86_64 or aarch64.

Usage:
  Run with root privileges: sudo python3 v2ray_agent_setup.py

Version: 5.9.0
"""

import json
import logging
import os
import platform
import re
import shutil
import signal
import subprocess
import sys
import tarfile
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

# ----------------------------------------------------------------
# Third-Party Libraries
# ----------------------------------------------------------------
try:
    import pyfiglet
    from rich import box
    from rich.align import Align
    from rich.console import Console
    from rich.logging import RichHandler
    from rich.panel import Panel
    from rich.progress import (
        Progress,
        SpinnerColumn,
        TextColumn,
        BarColumn,
        TimeRemainingColumn,
    )
    from rich.table import Table
    from rich.text import Text
    from rich.theme import Theme
except ImportError:
    print("This script requires the 'rich' and 'pyfiglet' libraries.")
    print("Please install them using: pip install rich pyfiglet")
    sys.exit(1)


# ----------------------------------------------------------------
# Nord-Themed Colors and Theme Setup
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette definitions for consistent UI styling."""

    POLAR_NIGHT_3: str = "#434C5E"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


nord_theme = Theme(
    {
        "banner": f"bold {NordColors.FROST_2}",
        "header": f"bold {NordColors.FROST_2}",
        "info": NordColors.FROST_3,
        "warning": NordColors.YELLOW,
        "error": NordColors.RED,
        "debug": NordColors.POLAR_NIGHT_3,
        "success": NordColors.GREEN,
        "logging.level.info": f"bold {NordColors.FROST_3}",
        "logging.level.success": f"bold {NordColors.GREEN}",
        "logging.level.warning": f"bold {NordColors.YELLOW}",
        "logging.level.error": f"bold {NordColors.RED}",
    }
)

console = Console(theme=nord_theme)

# ----------------------------------------------------------------
# Global Configuration & Constants
# ----------------------------------------------------------------
APP_NAME: str = "v2ray-agent"
APP_SUBTITLE: str = "Xray-core & sing-box Server Setup"
OPERATION_TIMEOUT: int = 300  # seconds
SUCCESS_LEVEL: int = 25
PROTOCOLS: Tuple[str, ...] = ("tcp", "udp")

logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")
logger = logging.getLogger("v2ray_agent_setup")

# Order matters: this is also the order of the status report.
SETUP_STEPS: Dict[str, str] = {
    "preflight": "Running pre-flight checks",
    "detect": "Detecting system environment",
    "prepare": "Creating working directories",
    "dependencies": "Installing base dependencies",
    "firewall": "Configuring firewall rules",
    "acme": "Installing ACME certificate tool",
    "xray": "Installing Xray-core",
    "sing_box": "Installing sing-box",
    "xray_service": "Creating Xray service",
    "sing_box_service": "Creating sing-box service",
    "menu": "Installing management menu",
    "cleanup": "Removing temporary files",
}


# ----------------------------------------------------------------
# Errors
# ----------------------------------------------------------------
class InstallerError(Exception):
    """A fatal setup failure; the run stops at the step that raised it."""


class NotRootError(InstallerError):
    pass


class NetworkUnreachableError(InstallerError):
    pass


class UnsupportedSystemError(InstallerError):
    pass


class PackageInstallError(InstallerError):
    pass


class MissingDependencyError(InstallerError):
    pass


class DownloadLinkNotFoundError(InstallerError):
    pass


class DownloadError(InstallerError):
    pass


class ExtractionError(InstallerError):
    pass


class ServiceActivationError(InstallerError):
    pass


class FirewallError(InstallerError):
    pass


class RemoteScriptError(InstallerError):
    pass


class FilesystemError(InstallerError):
    """A working directory or scratch file could not be created or removed."""


# Failures a shelled-out tool can produce: non-zero exit, timeout, missing binary.
COMMAND_ERRORS = (subprocess.SubprocessError, OSError)


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
class OsType(str, Enum):
    RHEL = "rhel"
    UBUNTU = "ubuntu"
    DEBIAN = "debian"


MIN_VERSIONS: Dict[OsType, int] = {
    OsType.RHEL: 7,
    OsType.UBUNTU: 18,
    OsType.DEBIAN: 10,
}

RHEL_IDS: Tuple[str, ...] = ("centos", "rocky", "almalinux", "oracle", "ol", "rhel")

ARCH_MAP: Dict[str, str] = {
    "x86_64": "amd64",
    "aarch64": "arm64",
}


@dataclass(frozen=True)
class HostProfile:
    """Normalized description of the host, built once by the detector."""

    os_type: OsType
    os_version: int
    os_id: str
    arch: str


@dataclass(frozen=True)
class CoreProject:
    """An upstream proxy core fetched from GitHub releases and run as a service."""

    name: str
    repo: str
    binary: str
    service: str
    description: str
    config_subdir: str
    run_args: str


@dataclass(frozen=True)
class ReleaseInfo:
    tag: str
    asset_url: str


XRAY_CORE = CoreProject(
    name="Xray-core",
    repo="XTLS/Xray-core",
    binary="xray",
    service="xray-agent",
    description="Xray Agent Service",
    config_subdir="xray",
    run_args="run -config {config}",
)

SING_BOX = CoreProject(
    name="sing-box",
    repo="SagerNet/sing-box",
    binary="sing-box",
    service="sing-box-agent",
    description="Sing-box Agent Service",
    config_subdir="sing-box",
    run_args="run -c {config}",
)


@dataclass
class Config:
    """Locations, URLs and package sets used by the setup process."""

    VERSION: str = "v5.9.0"
    WORK_DIR: Path = field(default_factory=lambda: Path("/root/v2ray-agent"))
    TEMP_DIR: Path = field(default_factory=lambda: Path("/tmp/v2ray-agent-tmp"))
    SYSTEMD_DIR: Path = field(default_factory=lambda: Path("/etc/systemd/system"))
    MENU_BIN: Path = field(default_factory=lambda: Path("/usr/bin/vasma"))
    LOG_FILE: str = "/var/log/v2ray_agent_setup.log"
    OS_RELEASE_FILE: Path = field(default_factory=lambda: Path("/etc/os-release"))
    REDHAT_RELEASE_FILE: Path = field(
        default_factory=lambda: Path("/etc/redhat-release")
    )

    PROBE_URLS: List[str] = field(
        default_factory=lambda: [
            "https://github.com",
            "https://raw.githubusercontent.com",
            "https://dl.fedoraproject.org",
        ]
    )
    PROBE_TIMEOUT: int = 5

    # Each entry is opened for both TCP and UDP
    FIREWALL_PORTS: List[str] = field(
        default_factory=lambda: ["80", "443", "8080", "30000-60000"]
    )
    SSH_PORT: int = 22

    RHEL_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "curl",
            "wget",
            "tar",
            "unzip",
            "openssl-devel",
            "gcc",
            "gcc-c++",
            "make",
            "libcap-devel",
            "bind-utils",
            "chrony",
            "firewalld",
        ]
    )
    DEBIAN_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "curl",
            "wget",
            "tar",
            "unzip",
            "libssl-dev",
            "gcc",
            "g++",
            "make",
            "libcap2-bin",
            "dnsutils",
            "chrony",
            "ufw",
        ]
    )
    REQUIRED_COMMANDS: List[str] = field(
        default_factory=lambda: ["curl", "wget", "gcc", "openssl", "chronyc"]
    )

    EPEL_RELEASE_URL: str = (
        "https://dl.fedoraproject.org/pub/epel/epel-release-latest-9.noarch.rpm"
    )
    GITHUB_API: str = "https://api.github.com"
    MENU_SCRIPT_URL: str = (
        "https://raw.githubusercontent.com/mack-a/v2ray-agent/master/scripts/menu.sh"
    )
    ACME_INSTALL_URL: str = "https://get.acme.sh"
    ACME_EMAIL: str = "admin@v2ray-agent.com"
    ACME_DEFAULT_CA: str = "letsencrypt"
    ACME_HOME: Path = field(default_factory=lambda: Path.home() / ".acme.sh")

    DOCS_URL: str = "https://www.v2ray-agent.com"
    ISSUES_URL: str = "https://github.com/mack-a/v2ray-agent/issues"

    @property
    def core_dir(self) -> Path:
        return self.WORK_DIR / "core"

    @property
    def config_dir(self) -> Path:
        return self.WORK_DIR / "config"

    @property
    def log_dir(self) -> Path:
        return self.WORK_DIR / "log"

    @property
    def scripts_dir(self) -> Path:
        return self.WORK_DIR / "scripts"

    def to_dict(self) -> Dict[str, Any]:
        """Convert the config to a dictionary."""
        return asdict(self)


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def create_header(title: str = APP_NAME) -> Panel:
    """
    Generate an ASCII art header with gradient styling using Pyfiglet.
    The banner is built line-by-line into a Rich Text object to avoid stray markup tokens.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts: List[str] = ["slant", "small", "digital", "mini", "smslant"]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 120))
            ascii_art = fig.renderText(title)
            if ascii_art.strip():
                break
        except Exception:
            continue
    if not ascii_art.strip():
        ascii_art = title

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        color = colors[i % len(colors)]
        combined_text.append(Text(line, style=f"bold {color}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")

    return Panel(
        Align.center(combined_text),
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"{APP_NAME} {Config.VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text(APP_SUBTITLE, style=f"bold {NordColors.SNOW_STORM_1}"),
        subtitle_align="center",
        box=box.ROUNDED,
    )


def print_info(text: str) -> None:
    logger.info(text)


def print_success(text: str) -> None:
    logger.log(SUCCESS_LEVEL, text)


def print_warning(text: str) -> None:
    logger.warning(text)


def print_error(text: str) -> None:
    logger.error(text)


def print_section(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")


def display_panel(
    message: str, style: str = NordColors.FROST_2, title: Optional[str] = None
) -> None:
    """Display a styled panel with a message."""
    panel = Panel(
        Text.from_markup(f"[{style}]{message}[/]"),
        border_style=f"{style}",
        padding=(1, 2),
        title=f"[bold {style}]{title}[/{style}]" if title else None,
        box=box.ROUNDED,
    )
    console.print(panel)


def print_status_report(status: Dict[str, Dict[str, str]]) -> None:
    """Print a status report table for all setup steps."""
    table = Table(title="Setup Status Report", style="banner", box=box.ROUNDED)
    table.add_column("Task", style="header")
    table.add_column("Status", style="info")
    table.add_column("Message", style="info")

    for key, data in status.items():
        status_color = {
            "pending": "debug",
            "in_progress": "warning",
            "success": "success",
            "failed": "error",
        }.get(data["status"].lower(), "info")
        table.add_row(
            key.replace("_", " ").title(),
            f"[{status_color}]{data['status'].upper()}[/{status_color}]",
            data["message"],
        )
    console.print(table)


def display_summary(config: Config) -> None:
    """Show the follow-up instructions after a successful installation."""
    message = (
        "Installation complete!\n\n"
        "Next steps:\n"
        f"  1. Run [bold]{config.MENU_BIN.name}[/bold] to open the management menu\n"
        "  2. Configure nodes and generate subscription links from the menu\n"
        "  3. Clients connect to the server IP on the configured ports\n"
        f"  4. Documentation: {config.DOCS_URL}\n"
        f"  5. Issue tracker: {config.ISSUES_URL}"
    )
    display_panel(message, style=NordColors.GREEN, title="Success")


# ----------------------------------------------------------------
# Logger Setup
# ----------------------------------------------------------------
def setup_logger(log_file: Union[str, Path]) -> logging.Logger:
    """Set up the rich console handler and the debug log file."""
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(
        console=console, show_time=False, show_path=False, markup=False
    )
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    try:
        os.chmod(str(log_file), 0o600)
    except Exception as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    return logger


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(sig: int, frame: Any) -> None:
    """Stop immediately; a partial installation is repaired by re-running."""
    sig_name = (
        signal.Signals(sig).name if hasattr(signal, "Signals") else f"signal {sig}"
    )
    print_warning(f"Process interrupted by {sig_name}")
    sys.exit(128 + sig)


# ----------------------------------------------------------------
# Command Execution & Network Helpers
# ----------------------------------------------------------------
Runner = Callable[..., subprocess.CompletedProcess]


def run_command(
    cmd: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    check: bool = True,
    capture_output: bool = True,
    timeout: int = OPERATION_TIMEOUT,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Execute a system command.
    Returns:
        A CompletedProcess instance with command results.
    """
    cmd = list(cmd)
    logger.debug(f"Running command: {' '.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            env=env or os.environ.copy(),
            check=check,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
            input=input,
        )
    except subprocess.CalledProcessError as e:
        logger.debug(f"Command failed with exit code {e.returncode}: {' '.join(cmd)}")
        if e.stdout:
            logger.debug(f"Stdout: {e.stdout.strip()}")
        if e.stderr:
            logger.debug(f"Stderr: {e.stderr.strip()}")
        raise
    except subprocess.TimeoutExpired:
        logger.debug(f"Command timed out after {timeout} seconds: {' '.join(cmd)}")
        raise


def probe_url(url: str, timeout: int) -> bool:
    """Return True when a connection to ``url`` can be established."""
    try:
        with urllib.request.urlopen(url, timeout=timeout):
            return True
    except urllib.error.HTTPError:
        # The server answered, which is all the probe needs.
        return True
    except (urllib.error.URLError, OSError) as e:
        logger.debug(f"Probe of {url} failed: {e}")
        return False


def fetch_text(url: str, timeout: Optional[int] = None) -> str:
    request = urllib.request.Request(url, headers={"User-Agent": APP_NAME})
    with urllib.request.urlopen(request, timeout=timeout or OPERATION_TIMEOUT) as response:
        return response.read().decode("utf-8")


def fetch_json(url: str) -> Dict[str, Any]:
    return json.loads(fetch_text(url))


def format_size(num_bytes: float) -> str:
    """Convert bytes to a human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if num_bytes < 1024:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} PB"


def download_file(url: str, dest: Path) -> Path:
    """
    Download ``url`` to ``dest`` with a progress bar.
    Raises:
        DownloadError if the transfer fails; a partial file is removed.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Downloading {url} to {dest}")
    try:
        with Progress(
            SpinnerColumn(style=f"bold {NordColors.FROST_1}"),
            TextColumn(f"[bold {NordColors.FROST_2}]Downloading {dest.name}"),
            BarColumn(
                bar_width=40,
                style=NordColors.FROST_4,
                complete_style=NordColors.FROST_2,
            ),
            TextColumn(f"[{NordColors.SNOW_STORM_1}]{{task.fields[size]}}"),
            TimeRemainingColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Downloading", total=None, size="0 B")

            def update_progress(block_num: int, block_size: int, total_size: int) -> None:
                downloaded = block_num * block_size
                if total_size > 0:
                    downloaded = min(downloaded, total_size)
                    progress.update(task, total=total_size)
                progress.update(task, completed=downloaded, size=format_size(downloaded))

            urllib.request.urlretrieve(url, dest, reporthook=update_progress)
    except (urllib.error.URLError, OSError, ValueError) as e:
        if dest.exists():
            dest.unlink()
        raise DownloadError(f"Download of {url} failed: {e}") from e
    logger.debug(f"Download complete: {dest} ({format_size(dest.stat().st_size)})")
    return dest


def verify_commands(
    commands: Sequence[str], which: Optional[Callable[[str], Optional[str]]] = None
) -> None:
    """Fail on the first command that is not resolvable on PATH."""
    which = which or shutil.which
    for cmd in commands:
        if which(cmd) is None:
            raise MissingDependencyError(
                f"Required dependency {cmd} is missing; install it manually and retry"
            )


# ----------------------------------------------------------------
# System Detection
# ----------------------------------------------------------------
def read_release_file(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise UnsupportedSystemError(f"Cannot read {path}: {e}") from e


def parse_os_release(path: Path) -> Dict[str, str]:
    """Parse the KEY=value lines of an os-release file."""
    values: Dict[str, str] = {}
    for line in read_release_file(path).splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def major_version(version_id: str) -> int:
    try:
        return int(version_id.split(".")[0])
    except ValueError:
        raise UnsupportedSystemError(f"Cannot parse system version '{version_id}'")


def check_minimum_version(os_type: OsType, os_version: int) -> None:
    minimum = MIN_VERSIONS[os_type]
    if os_version < minimum:
        raise UnsupportedSystemError(
            f"{os_type.value} systems require version {minimum}+ (current: {os_version})"
        )


def resolve_os(os_id: str, version_id: str) -> Tuple[OsType, int]:
    """
    Map an os-release ID/VERSION_ID pair onto a supported family and major version.
    Raises:
        UnsupportedSystemError for unknown vendors or versions below the minimum.
    """
    os_id = os_id.lower()
    if os_id == "opencloudos" and re.match(r"9(\.|$)", version_id):
        # OpenCloudOS 9.x is handled as RHEL 9 whatever its minor release
        print_info(
            f"Detected OpenCloudOS {version_id} (kernel {platform.release()}), "
            "using RHEL 9 compatible settings"
        )
        return OsType.RHEL, 9

    if os_id in RHEL_IDS:
        os_type = OsType.RHEL
    elif os_id == "ubuntu":
        os_type = OsType.UBUNTU
    elif os_id == "debian":
        os_type = OsType.DEBIAN
    else:
        raise UnsupportedSystemError(
            f"Unsupported system: {os_id} {version_id}; use OpenCloudOS 9.x, "
            "CentOS 7+, Ubuntu 18.04+ or Debian 10+"
        )

    os_version = major_version(version_id)
    print_info(f"Detected {os_type.value} family system: {os_id} {os_version}")
    check_minimum_version(os_type, os_version)
    return os_type, os_version


def resolve_arch(machine: str) -> str:
    try:
        return ARCH_MAP[machine]
    except KeyError:
        raise UnsupportedSystemError(
            f"Unsupported architecture {machine}; only x86_64 (amd64) "
            "and aarch64 (arm64) are supported"
        )


def detect_system(config: Config, machine: Optional[str] = None) -> HostProfile:
    """Build the host profile from the release files and machine type."""
    if config.OS_RELEASE_FILE.is_file():
        release = parse_os_release(config.OS_RELEASE_FILE)
        os_id = release.get("ID", "").lower()
        os_type, os_version = resolve_os(os_id, release.get("VERSION_ID", ""))
    elif config.REDHAT_RELEASE_FILE.is_file():
        match = re.search(
            r"[0-9]+\.[0-9]+", read_release_file(config.REDHAT_RELEASE_FILE)
        )
        if match is None:
            raise UnsupportedSystemError(
                f"Cannot read a version from {config.REDHAT_RELEASE_FILE}"
            )
        os_id = "centos"
        os_type, os_version = OsType.RHEL, major_version(match.group())
        print_info(f"Detected CentOS system: {os_version}")
        check_minimum_version(os_type, os_version)
    else:
        raise UnsupportedSystemError(
            "Cannot identify the system type; use OpenCloudOS 9.x, "
            "CentOS 7+, Ubuntu 18.04+ or Debian 10+"
        )

    arch = resolve_arch(machine or platform.machine())
    print_info(f"Detected architecture: {arch}")
    return HostProfile(os_type=os_type, os_version=os_version, os_id=os_id, arch=arch)


# ----------------------------------------------------------------
# OS Family Strategies
# ----------------------------------------------------------------
class OsFamily:
    """Package manager and firewall front-end for one OS family."""

    def __init__(self, profile: HostProfile, config: Config, runner: Runner = run_command):
        self.profile = profile
        self.config = config
        self.runner = runner

    def install_packages(self) -> None:
        raise NotImplementedError

    def enable_firewall(self) -> None:
        raise NotImplementedError

    def open_firewall_ports(self, ports: Sequence[str]) -> None:
        raise NotImplementedError

    def _firewall(self, cmd: List[str]) -> None:
        try:
            self.runner(cmd)
        except COMMAND_ERRORS as e:
            raise FirewallError(f"Firewall command failed: {' '.join(cmd)} ({e})") from e


class RhelFamily(OsFamily):
    """dnf with EPEL on OpenCloudOS, yum on the other RHEL rebuilds."""

    @property
    def uses_dnf(self) -> bool:
        return self.profile.os_id == "opencloudos"

    def ensure_epel(self) -> None:
        try:
            result = self.runner(["dnf", "repolist", "enabled"], check=False)
        except COMMAND_ERRORS as e:
            raise PackageInstallError(f"Could not list dnf repositories: {e}") from e
        if "epel" in (result.stdout or "").lower():
            logger.debug("EPEL repository already enabled")
            return

        print_info("Enabling the EPEL repository...")
        url = self.config.EPEL_RELEASE_URL
        try:
            self.runner(["dnf", "install", "-y", "-q", url])
        except COMMAND_ERRORS as e:
            raise PackageInstallError(
                f"EPEL repository installation failed; run manually: dnf install -y {url}"
            ) from e
        try:
            self.runner(["dnf", "clean", "all"])
            self.runner(["dnf", "makecache"])
        except COMMAND_ERRORS as e:
            raise PackageInstallError(f"Refreshing the dnf cache failed: {e}") from e

    def install_packages(self) -> None:
        if self.uses_dnf:
            self.ensure_epel()
            cmd = ["dnf", "install", "-y", "-q"] + self.config.RHEL_PACKAGES
            hint = "check the dnf sources (a local OpenCloudOS mirror is recommended)"
        else:
            cmd = ["yum", "install", "-y", "-q"] + self.config.RHEL_PACKAGES
            hint = "check the yum repository configuration"
        try:
            self.runner(cmd)
        except COMMAND_ERRORS as e:
            raise PackageInstallError(f"Dependency installation failed; {hint}") from e

    def enable_firewall(self) -> None:
        # firewalld ships disabled on OpenCloudOS 9
        if self.uses_dnf:
            self._firewall(["systemctl", "enable", "--now", "firewalld"])

    def open_firewall_ports(self, ports: Sequence[str]) -> None:
        for port in ports:
            for proto in PROTOCOLS:
                self._firewall(["firewall-cmd", "--permanent", f"--add-port={port}/{proto}"])
        self._firewall(["firewall-cmd", "--reload"])


class DebianFamily(OsFamily):
    """apt and ufw for Ubuntu and Debian."""

    def install_packages(self) -> None:
        env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
        try:
            self.runner(["apt", "update", "-y", "-qq"], env=env)
            self.runner(["apt", "install", "-y", "-qq"] + self.config.DEBIAN_PACKAGES, env=env)
        except COMMAND_ERRORS as e:
            raise PackageInstallError(
                "Dependency installation failed; check the apt sources"
            ) from e

    def enable_firewall(self) -> None:
        try:
            self.runner(["ufw", "allow", f"{self.config.SSH_PORT}/tcp"])
            self.runner(["ufw", "--force", "enable"])
        except COMMAND_ERRORS as e:
            print_warning(f"Could not enable ufw, continuing without it: {e}")

    def open_firewall_ports(self, ports: Sequence[str]) -> None:
        for port in ports:
            for proto in PROTOCOLS:
                self._firewall(["ufw", "allow", f"{port}/{proto}"])
        self._firewall(["ufw", "reload"])


def family_for(profile: HostProfile, config: Config, runner: Runner = run_command) -> OsFamily:
    if profile.os_type is OsType.RHEL:
        return RhelFamily(profile, config, runner)
    return DebianFamily(profile, config, runner)


# ----------------------------------------------------------------
# Core Fetching & Service Rendering
# ----------------------------------------------------------------
SERVICE_TEMPLATE = """[Unit]
Description={description}
After=network.target nss-lookup.target

[Service]
User=root
WorkingDirectory={work_dir}
ExecStart={exec_start}
Restart=on-failure
RestartSec=5s
LimitNOFILE=1000000

[Install]
WantedBy=multi-user.target
"""

MENU_WRAPPER = """#!/usr/bin/env bash
set -euo pipefail
WORK_DIR="{work_dir}"
source ${{WORK_DIR}}/scripts/menu.sh
main_menu
"""


def select_asset(release: Dict[str, Any], arch: str) -> Optional[str]:
    """Return the first linux-<arch>.tar.gz download URL of a release."""
    for asset in release.get("assets") or []:
        url = asset.get("browser_download_url") or ""
        if "linux" in url and url.endswith(f"linux-{arch}.tar.gz"):
            return url
    return None


def extract_binary(archive: Path, binary: str, dest_dir: Path) -> Path:
    """
    Extract the single executable named ``binary`` from a .tar.gz archive.
    The file is replaced atomically so a running service keeps its old inode.
    """
    target = dest_dir / binary
    staging = dest_dir / f".{binary}.new"
    try:
        with tarfile.open(archive, "r:gz") as tar:
            member = next(
                (m for m in tar.getmembers() if m.isfile() and Path(m.name).name == binary),
                None,
            )
            if member is None:
                raise ExtractionError(f"{binary} not found in {archive.name}")
            source = tar.extractfile(member)
            if source is None:
                raise ExtractionError(f"{binary} in {archive.name} is not a regular file")
            with source, open(staging, "wb") as out:
                shutil.copyfileobj(source, out)
        staging.chmod(0o755)
        os.replace(staging, target)
    except (tarfile.TarError, OSError) as e:
        raise ExtractionError(f"Extracting {binary} from {archive.name} failed: {e}") from e
    finally:
        if staging.exists():
            staging.unlink()
    return target


def render_service_unit(project: CoreProject, config: Config) -> str:
    config_file = config.config_dir / project.config_subdir / "config.json"
    exec_start = f"{config.core_dir / project.binary} " + project.run_args.format(
        config=config_file
    )
    return SERVICE_TEMPLATE.format(
        description=project.description,
        work_dir=config.WORK_DIR,
        exec_start=exec_start,
    )


# ----------------------------------------------------------------
# Main Setup Class
# ----------------------------------------------------------------
class V2rayAgentSetup:
    """Runs every provisioning step in a fixed order, stopping at the first failure."""

    def __init__(self, config: Optional[Config] = None, runner: Runner = run_command):
        self.config = config or Config()
        self.runner = runner
        self.status: Dict[str, Dict[str, str]] = {
            name: {"status": "pending", "message": ""} for name in SETUP_STEPS
        }
        self.profile: Optional[HostProfile] = None
        self._releases: Dict[str, ReleaseInfo] = {}

    def run_step(self, task_name: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run one step and record its outcome in the status table."""
        description = SETUP_STEPS[task_name]
        self.status[task_name] = {
            "status": "in_progress",
            "message": f"{description} in progress...",
        }
        print_section(description)
        start = time.time()
        try:
            result = func(*args)
        except InstallerError as e:
            elapsed = time.time() - start
            self.status[task_name] = {
                "status": "failed",
                "message": f"Failed after {elapsed:.2f}s: {e}",
            }
            raise
        elapsed = time.time() - start
        self.status[task_name] = {
            "status": "success",
            "message": f"Completed in {elapsed:.2f}s",
        }
        return result

    def run(self) -> HostProfile:
        self.run_step("preflight", self.preflight)
        profile = self.run_step("detect", self.detect_system)
        family = family_for(profile, self.config, self.runner)
        self.run_step("prepare", self.create_dirs)
        self.run_step("dependencies", self.install_dependencies, family)
        self.run_step("firewall", self.configure_firewall, family)
        self.run_step("acme", self.install_acme)
        self.run_step("xray", self.install_core, XRAY_CORE, profile)
        self.run_step("sing_box", self.install_core, SING_BOX, profile)
        self.run_step("xray_service", self.install_service, XRAY_CORE)
        self.run_step("sing_box_service", self.install_service, SING_BOX)
        self.run_step("menu", self.install_menu)
        self.run_step("cleanup", self.clean_temp)
        return profile

    # ----------------------------------------------------------------
    # Preflight
    # ----------------------------------------------------------------
    def preflight(self) -> None:
        self.check_root()
        self.check_network()

    def check_root(self) -> None:
        if os.geteuid() != 0:
            raise NotRootError("This script must be run as root")
        logger.debug("Root privileges confirmed")

    def check_network(self) -> None:
        print_info("Testing network connectivity...")
        for url in self.config.PROBE_URLS:
            if not probe_url(url, self.config.PROBE_TIMEOUT):
                raise NetworkUnreachableError(
                    f"Network connection failed: cannot reach {url}; "
                    "check the network settings or configure a proxy"
                )
        print_success("Network connectivity verified")

    def detect_system(self) -> HostProfile:
        self.profile = detect_system(self.config)
        print_success("System environment detected")
        return self.profile

    def create_dirs(self) -> None:
        for path in (
            self.config.WORK_DIR,
            self.config.core_dir,
            self.config.config_dir,
            self.config.log_dir,
            self.config.scripts_dir,
            self.config.TEMP_DIR,
        ):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(f"Cannot create directory {path}: {e}") from e
        for path in (self.config.WORK_DIR, self.config.log_dir):
            try:
                path.chmod(0o700)
            except OSError as e:
                raise FilesystemError(f"Cannot restrict permissions on {path}: {e}") from e
        print_success("Working directories created")

    # ----------------------------------------------------------------
    # Dependencies & Firewall
    # ----------------------------------------------------------------
    def install_dependencies(self, family: OsFamily) -> None:
        print_info("Installing base dependency packages...")
        family.install_packages()
        family.enable_firewall()
        verify_commands(self.config.REQUIRED_COMMANDS)
        print_success("Base dependencies installed")

    def configure_firewall(self, family: OsFamily) -> None:
        family.open_firewall_ports(self.config.FIREWALL_PORTS)
        print_success(
            f"Firewall opened for {', '.join(self.config.FIREWALL_PORTS)} (tcp/udp)"
        )

    # ----------------------------------------------------------------
    # ACME
    # ----------------------------------------------------------------
    def find_acme_client(self) -> Optional[Path]:
        found = shutil.which("acme.sh")
        if found:
            return Path(found)
        candidate = self.config.ACME_HOME / "acme.sh"
        return candidate if candidate.is_file() else None

    def install_acme(self) -> None:
        client = self.find_acme_client()
        if client is None:
            print_info("Installing acme.sh for automatic SSL certificates...")
            try:
                script = fetch_text(self.config.ACME_INSTALL_URL)
                self.runner(["sh", "-s", f"email={self.config.ACME_EMAIL}"], input=script)
            except COMMAND_ERRORS as e:
                raise RemoteScriptError(f"acme.sh installation failed: {e}") from e
            client = self.config.ACME_HOME / "acme.sh"
        else:
            logger.debug(f"acme.sh already present at {client}")

        try:
            self.runner(
                [str(client), "--set-default-ca", "--server", self.config.ACME_DEFAULT_CA]
            )
        except COMMAND_ERRORS as e:
            raise RemoteScriptError(
                f"Setting the acme.sh default CA to {self.config.ACME_DEFAULT_CA} failed: {e}"
            ) from e
        print_success("ACME certificate tool installed")

    # ----------------------------------------------------------------
    # Proxy Cores
    # ----------------------------------------------------------------
    def fetch_release(self, project: CoreProject, arch: str) -> ReleaseInfo:
        """Resolve the latest release once; the tag is reused for reporting."""
        if project.repo in self._releases:
            return self._releases[project.repo]
        url = f"{self.config.GITHUB_API}/repos/{project.repo}/releases/latest"
        try:
            release = fetch_json(url)
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise DownloadLinkNotFoundError(
                f"Cannot get the {project.name} download link (network problem): {e}"
            ) from e
        asset_url = select_asset(release, arch)
        if asset_url is None:
            raise DownloadLinkNotFoundError(
                f"Cannot get the {project.name} download link for linux-{arch}"
            )
        info = ReleaseInfo(tag=release.get("tag_name") or "unknown", asset_url=asset_url)
        self._releases[project.repo] = info
        return info

    def install_core(self, project: CoreProject, profile: HostProfile) -> Path:
        print_info(f"Downloading the latest {project.name} release...")
        release = self.fetch_release(project, profile.arch)
        archive = self.config.TEMP_DIR / f"{project.binary}.tar.gz"
        try:
            download_file(release.asset_url, archive)
        except DownloadError as e:
            raise DownloadError(f"{project.name} download failed: {e}") from e
        try:
            self.config.core_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create {self.config.core_dir}: {e}") from e
        binary = extract_binary(archive, project.binary, self.config.core_dir)
        print_success(f"{project.name} installed (version: {release.tag})")
        return binary

    # ----------------------------------------------------------------
    # Services
    # ----------------------------------------------------------------
    def install_service(self, project: CoreProject) -> Path:
        unit_path = self.config.SYSTEMD_DIR / f"{project.service}.service"
        try:
            unit_path.write_text(render_service_unit(project, self.config))
            self.runner(["systemctl", "daemon-reload"])
            self.runner(["systemctl", "enable", "--now", project.service])
            result = self.runner(["systemctl", "is-active", project.service], check=False)
        except COMMAND_ERRORS as e:
            raise ServiceActivationError(f"{project.service} service failed to start: {e}") from e
        state = (result.stdout or "").strip()
        if state == "activating":
            # still inside its restart back-off until the menu writes a config
            print_warning(f"{project.service} is enabled but still activating")
        elif state != "active":
            raise ServiceActivationError(
                f"{project.service} service failed to start (state: {state or 'unknown'})"
            )
        print_success(f"{project.service} service enabled and running")
        return unit_path

    # ----------------------------------------------------------------
    # Menu & Cleanup
    # ----------------------------------------------------------------
    def install_menu(self) -> None:
        menu_bin = self.config.MENU_BIN
        print_info(f"Installing the management menu ({menu_bin.name} command)...")
        try:
            menu_bin.write_text(MENU_WRAPPER.format(work_dir=self.config.WORK_DIR))
            menu_bin.chmod(0o755)
        except OSError as e:
            raise RemoteScriptError(f"Could not write {menu_bin}: {e}") from e

        menu_script = self.config.scripts_dir / "menu.sh"
        try:
            download_file(self.config.MENU_SCRIPT_URL, menu_script)
        except DownloadError as e:
            raise RemoteScriptError(f"Menu script download failed (network problem): {e}") from e
        try:
            menu_script.chmod(0o700)
        except OSError as e:
            raise RemoteScriptError(f"Could not set permissions on {menu_script}: {e}") from e
        print_success(f"Management menu installed; run {menu_bin.name} to start it")

    def clean_temp(self) -> None:
        if self.config.TEMP_DIR.exists():
            try:
                shutil.rmtree(self.config.TEMP_DIR)
            except OSError as e:
                raise FilesystemError(f"Cannot remove {self.config.TEMP_DIR}: {e}") from e
        print_success("Temporary files removed")


# ----------------------------------------------------------------
# Main Program Entry Point
# ----------------------------------------------------------------
def main(config: Optional[Config] = None) -> int:
    """Run the full setup; returns the process exit code."""
    config = config or Config()
    setup_logger(config.LOG_FILE)
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, signal_handler)

    console.print(create_header())
    logger.debug(f"Configuration: {config.to_dict()}")
    setup = V2rayAgentSetup(config)
    try:
        setup.run()
    except InstallerError as e:
        print_error(str(e))
        print_status_report(setup.status)
        return 1

    print_status_report(setup.status)
    display_summary(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
