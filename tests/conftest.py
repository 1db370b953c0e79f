"""Pytest fixtures shared by the rootfs_imagegen tests.

The build pipeline shells out to truncate, mkfs.btrfs, mount, btrfs,
pacstrap, debootstrap and tar. FakeTools stands in for subprocess.run and
emulates those commands on plain directories so a full build can run
unprivileged inside tmp_path. Hook scripts still run with the real bash.
"""

import shutil
import subprocess
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rootfs_imagegen.builds.storage import GIB
from rootfs_imagegen.config import Settings

_REAL_RUN = subprocess.run

ARCH_KERNEL = "6.6.1-arch1-1"
DEBIAN_KERNEL = "6.1.0-18-amd64"

PASSWD = (
    "root:x:0:0:root:/root:/bin/bash\n"
    "bin:x:1:1::/:/usr/bin/nologin\n"
    "alice:x:1000:1000::/home/alice:/bin/bash\n"
)
GROUP = "root:x:0:root\nwheel:x:998:alice\nalice:x:1000:\n"
SHADOW = "root:!*:19700::::::\nbin:!*:19700::::::\nalice:$6$hash:19700:0:99999:7:::\n"

PACMAN_QUERY = "base 3-2\nbash 5.2.026-2\nlinux 6.6.1.arch1-1\n"
DPKG_QUERY = "bash 5.2.15-2\ncoreutils 9.1-1\n"


def _write(path: Path, content: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def populate_common(root: Path) -> None:
    """Files every bootstrap leaves behind."""
    _write(root / "etc/passwd", PASSWD)
    _write(root / "etc/group", GROUP)
    _write(root / "etc/shadow", SHADOW)
    _write(root / "etc/passwd-", PASSWD)
    _write(root / "etc/shadow-", SHADOW)
    _write(root / "etc/.pwd.lock")
    _write(root / "etc/ssh/ssh_host_ed25519_key", "private")
    _write(root / "etc/ssh/ssh_host_ed25519_key.pub", "public")
    _write(root / "etc/ssh/sshd_config", "PermitRootLogin no\n")
    _write(root / "etc/machine-id", "0123456789abcdef\n")
    _write(root / "usr/local/bin/tool", "#!/bin/sh\n")
    _write(root / "opt/vendor/app", "binary")
    (root / "root").mkdir(parents=True, exist_ok=True)
    _write(root / "root/.bash_history", "ls\n")


def populate_arch(root: Path) -> None:
    populate_common(root)
    _write(root / "boot/intel-ucode.img", "microcode")
    _write(root / f"usr/lib/modules/{ARCH_KERNEL}/vmlinuz", "kernel")


def populate_debian(root: Path) -> None:
    populate_common(root)
    for prefix in ("vmlinuz-", "initrd.img-", "config-", "System.map-"):
        _write(root / "boot" / f"{prefix}{DEBIAN_KERNEL}", prefix)
    (root / "vmlinuz").symlink_to(f"boot/vmlinuz-{DEBIAN_KERNEL}")
    (root / "initrd.img").symlink_to(f"boot/initrd.img-{DEBIAN_KERNEL}")
    (root / f"usr/lib/modules/{DEBIAN_KERNEL}/kernel").mkdir(parents=True)
    _write(root / "var/lib/dpkg/status")


class FakeTools:
    """Callable replacement for subprocess.run.

    Attributes:
        calls: argv of every command, in order.
        environments: env passed with each command (None when inherited).
        readonly: Subvolumes marked read-only, in order.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.environments: list[dict[str, str] | None] = []
        self.readonly: list[Path] = []
        self.failures: dict[str, tuple[int, str]] = {}
        self.loop_mounts: set[Path] = set()

    def fail(self, tool: str, exit_code: int = 1, stderr: str = "") -> None:
        """Make every later invocation of tool exit with exit_code."""
        self.failures[tool] = (exit_code, stderr)

    def tools(self) -> list[str]:
        return [argv[0] for argv in self.calls]

    def commands(self, tool: str) -> list[list[str]]:
        return [argv for argv in self.calls if argv[0] == tool]

    def __call__(
        self, argv, cwd=None, env=None, capture_output=False, text=True, check=False
    ):
        argv = [str(part) for part in argv]
        self.calls.append(argv)
        self.environments.append(env)
        tool = argv[0]
        if tool == "bash":
            return _REAL_RUN(
                argv,
                cwd=cwd,
                env=env,
                capture_output=capture_output,
                text=text,
                check=check,
            )
        if tool in self.failures:
            exit_code, stderr = self.failures[tool]
            return subprocess.CompletedProcess(argv, exit_code, "", stderr)

        handler = getattr(self, "_" + tool.replace(".", "_").replace("-", "_"), None)
        stdout = handler(argv[1:]) if handler is not None else ""
        return subprocess.CompletedProcess(argv, 0, stdout or "", "")

    def _truncate(self, args: list[str]) -> None:
        Path(args[-1]).touch()

    def _mount(self, args: list[str]) -> None:
        if "-o" in args and "loop" in args[args.index("-o") + 1]:
            self.loop_mounts.add(Path(args[-1]))

    def _umount(self, args: list[str]) -> None:
        target = Path(args[-1])
        if target not in self.loop_mounts:
            return
        # Unmounting the loop device makes its content disappear.
        self.loop_mounts.discard(target)
        for child in target.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

    def _btrfs(self, args: list[str]) -> None:
        if args[:2] == ["subvolume", "create"]:
            Path(args[2]).mkdir(parents=True, exist_ok=True)
        elif args[:2] == ["subvolume", "delete"]:
            shutil.rmtree(args[2])
        elif args[:2] == ["property", "set"]:
            self.readonly.append(Path(args[3]))
        elif args[0] == "send":
            _write(Path(args[2]), f"send stream of {args[3]}\n")

    def _pacstrap(self, args: list[str]) -> None:
        populate_arch(Path(args[3]))

    def _debootstrap(self, args: list[str]) -> None:
        positional = [a for a in args if not a.startswith("--")]
        populate_debian(Path(positional[1]))

    def _pacman(self, args: list[str]) -> str:
        return PACMAN_QUERY

    def _dpkg_query(self, args: list[str]) -> str:
        return DPKG_QUERY

    def _tar(self, args: list[str]) -> None:
        Path(args[args.index("-cf") + 1]).write_bytes(b"archive")


@pytest.fixture
def fake_tools() -> Iterator[FakeTools]:
    """Route every external command through FakeTools."""
    tools = FakeTools()
    with patch("rootfs_imagegen.builds.runner.subprocess.run", side_effect=tools):
        yield tools


@pytest.fixture
def plenty_of_space() -> Iterator[MagicMock]:
    """Report 500 GiB free on every filesystem."""
    with patch("rootfs_imagegen.builds.storage.shutil.disk_usage") as mock_usage:
        mock_usage.return_value = MagicMock(free=500 * GIB)
        yield mock_usage


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Empty configuration root."""
    path = tmp_path / "variants"
    path.mkdir()
    return path


@pytest.fixture
def make_variant(config_dir: Path) -> Callable[..., Path]:
    """Factory writing a variant directory under config_dir."""

    def _make(
        name: str,
        build_type: str | None = None,
        depends: list[str] | None = None,
        bootstrap: list[str] | None = None,
        packages: list[str] | None = None,
        files: dict[str, str] | None = None,
    ) -> Path:
        path = config_dir / name
        path.mkdir(parents=True, exist_ok=True)
        if build_type is not None:
            _write(path / "build-type", f"{build_type}\n")
        for list_name, entries in (
            ("depends.list", depends),
            ("bootstrap.list", bootstrap),
            ("package.list", packages),
        ):
            if entries is not None:
                _write(path / list_name, "".join(f"{e}\n" for e in entries))
        for rel, content in (files or {}).items():
            _write(path / rel, content)
        return path

    return _make


@pytest.fixture
def settings(tmp_path: Path, config_dir: Path) -> Settings:
    """Settings pointing every directory into tmp_path."""
    return Settings(
        config_dir=config_dir,
        output_dir=tmp_path / "output",
        scratch_dir=tmp_path / "scratch",
        name="test-image",
    )
