#!/usr/bin/python3
"""
clamshell - keep a laptop awake with its lid closed while an external
display is attached

Watches two pieces of machine state and holds a single sleep assertion
while both of them say the machine is being used in clamshell mode:

  1. Lid state.  Linux: logind's LidClosed property on the system bus
     (falls back to /proc/acpi/button/lid when dbus-python is missing).
     macOS: AppleClamshellState from ioreg.

  2. External display.  Linux: DRM connectors under /sys/class/drm; any
     connected connector that is not eDP/LVDS/DSI is external.  macOS:
     system_profiler SPDisplaysDataType.

The assertion is a logind "handle-lid-switch:sleep" block inhibitor on
Linux and "pmset -a disablesleep 1" on macOS.  It is taken when the lid
closes with an external display attached and released on any other
combination, and always released when the daemon exits.

Commands:
    clamshell [run]           run the monitor in the foreground
    clamshell install         register and start the background service
    clamshell uninstall       stop and remove the background service
    clamshell selftest        probe, decide, take and drop the assertion
    clamshell status          print the current lid/display decision

Runtime dependencies:
    dbus-python     - logind lid state and inhibitor locks (Linux)
    PyGObject       - GLib main loop for the monitor

sd_notify is implemented inline; no sdnotify dependency required.
"""

import enum
import glob
import json
import logging
import os
import platform
import plistlib
import re
import shlex
import shutil
import signal
import socket
import subprocess
import sys
from argparse import ArgumentParser, RawDescriptionHelpFormatter
from dataclasses import dataclass

try:
    import dbus
    import dbus.mainloop.glib

    HAVE_DBUS = True
except ImportError:
    HAVE_DBUS = False

try:
    from gi.repository import GLib

    HAVE_GLIB = True
except ImportError:
    GLib = None
    HAVE_GLIB = False

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_INTERVAL_SEC = 2.0
DEFAULT_FAILURE_THRESHOLD = 30
DEFAULT_TIMEOUT_SEC = 5.0

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_PERSISTENT_FAILURE = 3

LOGIND_BUS_NAME = "org.freedesktop.login1"
LOGIND_PATH = "/org/freedesktop/login1"
LOGIND_MANAGER_IFACE = "org.freedesktop.login1.Manager"
DBUS_PROPS_IFACE = "org.freedesktop.DBus.Properties"

INHIBIT_WHAT = "handle-lid-switch:sleep"
INHIBIT_WHO = "clamshell"
INHIBIT_WHY = "Lid closed with an external display attached"

DRM_ROOT = "/sys/class/drm"
ACPI_LID_GLOB = "/proc/acpi/button/lid/*/state"

# Connector name prefixes of panels built into the laptop.
INTERNAL_CONNECTORS = ("eDP", "LVDS", "DSI")

SYSTEMD_UNIT = "clamshell.service"
LAUNCHD_LABEL = "com.github.ubunatic.clamshell"

LOG = logging.getLogger("clamshell")

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ClamshellError(Exception):
    """Base class for every failure the daemon reports."""


class ProbeError(ClamshellError):
    """Lid or display state could not be read."""


class InhibitorError(ClamshellError):
    """The sleep assertion could not be acquired or released."""


class InstallError(ClamshellError):
    """The service descriptor could not be registered."""


class UninstallError(ClamshellError):
    """The service descriptor could not be removed."""


class UsageError(ClamshellError):
    """Invalid command-line invocation."""


class CommandError(ClamshellError):
    """An external helper command could not be run or timed out."""


class PersistentFailureError(ClamshellError):
    """Too many consecutive monitor cycles failed."""


# ---------------------------------------------------------------------------
# State model and decision
# ---------------------------------------------------------------------------


class LidState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class DisplayState(enum.Enum):
    EXTERNAL_ATTACHED = "external-attached"
    EXTERNAL_ABSENT = "external-absent"


class DesiredMode(enum.Enum):
    INHIBIT = "inhibit"
    ALLOW = "allow"


class MonitorState(enum.Enum):
    IDLE = "idle"
    INHIBITING = "inhibiting"


@dataclass(frozen=True)
class InhibitorHandle:
    """An active sleep assertion.

    ``token`` is backend specific (a logind file descriptor on Linux).
    A ``borrowed`` handle refers to an assertion that already existed when
    it was taken; releasing it leaves the system setting alone.
    """

    token: int
    borrowed: bool = False


def decide(lid: LidState, display: DisplayState) -> DesiredMode:
    """Inhibit sleep only when the lid is closed and a display is attached."""
    if lid is LidState.CLOSED and display is DisplayState.EXTERNAL_ATTACHED:
        return DesiredMode.INHIBIT
    return DesiredMode.ALLOW


# ---------------------------------------------------------------------------
# systemd sd_notify (inline; avoids sdnotify dependency)
# ---------------------------------------------------------------------------


def sd_notify(msg: str) -> None:
    """
    Send a sd_notify message to systemd over NOTIFY_SOCKET.

    No-op if NOTIFY_SOCKET is not set (not running under systemd, or
    NotifyAccess not configured).  Errors are silently ignored; a failed
    notification is not worth crashing the daemon over.
    """
    notify_socket = os.getenv("NOTIFY_SOCKET")
    if not notify_socket:
        return
    if notify_socket.startswith("@"):
        notify_socket = "\0" + notify_socket[1:]
    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        with sock:
            sock.connect(notify_socket)
            sock.sendall(msg.encode())
    except OSError:
        pass


def setup_watchdog() -> None:
    """
    If systemd watchdog is enabled, schedule periodic WATCHDOG=1
    notifications at half the configured interval.
    """
    watchdog_usec = os.getenv("WATCHDOG_USEC")
    if not watchdog_usec:
        return

    interval_sec = int(watchdog_usec) / 2_000_000
    interval_ms = int(interval_sec * 1000)
    LOG.info("Systemd watchdog enabled (ping interval %.1fs)", interval_sec)

    def ping():
        sd_notify("WATCHDOG=1")
        return True

    GLib.timeout_add(interval_ms, ping)


# ---------------------------------------------------------------------------
# External commands
# ---------------------------------------------------------------------------


def _run_command(cmd: list, timeout: float) -> subprocess.CompletedProcess:
    """
    Run a helper command and return its decoded result.

    Raises CommandError if the command cannot be started or does not finish
    within ``timeout`` seconds.  On timeout the entire process group is
    SIGKILL'd so a wedged helper cannot hold the loop.  A nonzero exit
    status is returned, not raised; callers decide what it means.
    """
    LOG.debug("Running: %s", cmd)
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        raise CommandError(f"Failed to run {cmd[0]}: {exc}") from exc

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()
        raise CommandError(f"{cmd[0]} timed out after {timeout:g}s")

    return subprocess.CompletedProcess(
        cmd,
        proc.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


# ---------------------------------------------------------------------------
# Capability interfaces
# ---------------------------------------------------------------------------


class StateProbe:
    """Reads the lid and external display state from the OS."""

    def sample(self) -> "tuple[LidState, DisplayState]":
        raise NotImplementedError("Subclasses must implement sample")

    def watch(self, callback) -> None:
        """Call ``callback`` when the OS reports a state change.

        Optional; probes without change notifications rely on polling.
        """


class SleepInhibitor:
    """
    Owns at most one sleep assertion.

    enable() and disable() are idempotent: enabling twice returns the same
    handle without a second OS request, and disabling with nothing held
    does nothing.  Backends implement _acquire() and _release().
    """

    def __init__(self):
        self._handle = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def enable(self) -> InhibitorHandle:
        if self._handle is not None:
            return self._handle
        self._handle = self._acquire()
        LOG.debug("Sleep assertion acquired: %s", self._handle)
        return self._handle

    def disable(self, handle: "InhibitorHandle | None" = None) -> None:
        if self._handle is None:
            return
        if handle is not None and handle != self._handle:
            LOG.debug("Ignoring release of stale handle %s", handle)
            return
        # A failed release keeps the handle so the caller can retry.
        self._release(self._handle)
        LOG.debug("Sleep assertion released: %s", self._handle)
        self._handle = None

    def _acquire(self) -> InhibitorHandle:
        raise NotImplementedError("Subclasses must implement _acquire")

    def _release(self, handle: InhibitorHandle) -> None:
        raise NotImplementedError("Subclasses must implement _release")


class ServiceManager:
    """
    Registers the daemon with the OS service manager.

    ``descriptor_path`` is the unit or property list the backend owns.
    activate() raises InstallError when the service manager refuses;
    deactivate() must tolerate a service that is not loaded.
    """

    descriptor_path: str

    def render(self, command: list) -> str:
        raise NotImplementedError("Subclasses must implement render")

    def activate(self) -> None:
        raise NotImplementedError("Subclasses must implement activate")

    def deactivate(self) -> None:
        raise NotImplementedError("Subclasses must implement deactivate")

    def reload(self) -> None:
        """Pick up a removed descriptor; most service managers need nothing."""


# ---------------------------------------------------------------------------
# Linux: logind + DRM sysfs
# ---------------------------------------------------------------------------


def external_display_state(drm_root: str = DRM_ROOT) -> DisplayState:
    """
    Report whether any external DRM connector is connected.

    Connector directories are named card<N>-<connector>, e.g. card0-eDP-1
    or card1-HDMI-A-1.  Built-in panels (eDP, LVDS, DSI) are skipped.
    """
    if not os.path.isdir(drm_root):
        raise ProbeError(f"DRM sysfs directory {drm_root} not found")

    for status_path in sorted(glob.glob(os.path.join(drm_root, "card*-*", "status"))):
        connector = os.path.basename(os.path.dirname(status_path)).split("-", 1)[1]
        if connector.startswith(INTERNAL_CONNECTORS):
            continue
        try:
            with open(status_path) as f:
                status = f.read().strip()
        except OSError as exc:
            raise ProbeError(f"Cannot read {status_path}: {exc}") from exc
        if status == "connected":
            LOG.debug("External connector %s is connected", connector)
            return DisplayState.EXTERNAL_ATTACHED

    return DisplayState.EXTERNAL_ABSENT


def acpi_lid_state(pattern: str = ACPI_LID_GLOB) -> LidState:
    """Read the lid switch from the ACPI button state file."""
    lid_files = sorted(glob.glob(pattern))
    if not lid_files:
        raise ProbeError("No ACPI lid state file found")

    try:
        with open(lid_files[0]) as f:
            content = f.read().strip().lower()
    except OSError as exc:
        raise ProbeError(f"Cannot read {lid_files[0]}: {exc}") from exc

    if "closed" in content:
        return LidState.CLOSED
    if "open" in content:
        return LidState.OPEN
    raise ProbeError(f"Unrecognized lid state {content!r} in {lid_files[0]}")


def _logind_object():
    return dbus.SystemBus().get_object(LOGIND_BUS_NAME, LOGIND_PATH)


class LinuxProbe(StateProbe):
    """Lid state from logind, display state from DRM sysfs."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SEC, drm_root: str = DRM_ROOT):
        self.timeout = timeout
        self.drm_root = drm_root
        self._props = None

    def sample(self):
        return self._lid_state(), external_display_state(self.drm_root)

    def _lid_state(self) -> LidState:
        if not HAVE_DBUS:
            return acpi_lid_state()
        try:
            if self._props is None:
                self._props = dbus.Interface(_logind_object(), DBUS_PROPS_IFACE)
            closed = self._props.Get(
                LOGIND_MANAGER_IFACE, "LidClosed", timeout=self.timeout
            )
        except dbus.DBusException as exc:
            self._props = None
            raise ProbeError(f"Cannot read logind LidClosed: {exc}") from exc
        return LidState.CLOSED if bool(closed) else LidState.OPEN

    def watch(self, callback):
        """
        Subscribe to logind PropertiesChanged so a lid change triggers an
        immediate cycle instead of waiting for the next poll.

        Requires the GLib D-Bus main loop to be the default before the
        system bus connection is created.
        """
        if not HAVE_DBUS:
            LOG.info("dbus-python not available; relying on polling only")
            return

        def on_properties_changed(iface, changed, invalidated):
            if iface != LOGIND_MANAGER_IFACE:
                return
            if "LidClosed" not in changed and "LidClosed" not in invalidated:
                return
            LOG.debug("logind LidClosed changed: %s", changed.get("LidClosed"))
            callback()

        try:
            dbus.SystemBus().add_signal_receiver(
                on_properties_changed,
                signal_name="PropertiesChanged",
                dbus_interface=DBUS_PROPS_IFACE,
                bus_name=LOGIND_BUS_NAME,
                path=LOGIND_PATH,
            )
        except dbus.DBusException as exc:
            LOG.warning("Cannot subscribe to logind lid changes: %s", exc)
            return
        LOG.info("Subscribed to logind LidClosed changes")


class LogindInhibitor(SleepInhibitor):
    """
    Blocks lid-switch handling and sleep with a logind inhibitor lock.

    logind hands back a file descriptor; the lock lives exactly as long as
    that descriptor stays open, so a crashed daemon never leaks it.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SEC):
        super().__init__()
        self.timeout = timeout

    def _acquire(self):
        if not HAVE_DBUS:
            raise InhibitorError("Please install dbus-python to use logind inhibitor locks")
        try:
            manager = dbus.Interface(_logind_object(), LOGIND_MANAGER_IFACE)
            fd = manager.Inhibit(
                INHIBIT_WHAT, INHIBIT_WHO, INHIBIT_WHY, "block", timeout=self.timeout
            )
        except dbus.DBusException as exc:
            raise InhibitorError(f"logind refused inhibitor lock: {exc}") from exc
        return InhibitorHandle(token=fd.take())

    def _release(self, handle):
        try:
            os.close(handle.token)
        except OSError as exc:
            raise InhibitorError(f"Cannot close inhibitor fd {handle.token}: {exc}") from exc


class SystemdService(ServiceManager):
    """systemd unit registration, user scope unless running as root."""

    def __init__(self, unit_dir=None, user=None, timeout=DEFAULT_TIMEOUT_SEC):
        self.user = os.geteuid() != 0 if user is None else user
        if unit_dir is None:
            if self.user:
                unit_dir = os.path.join(os.path.expanduser("~"), ".config", "systemd", "user")
            else:
                unit_dir = "/etc/systemd/system"
        self.descriptor_path = os.path.join(unit_dir, SYSTEMD_UNIT)
        self.timeout = timeout

    def render(self, command: list) -> str:
        # systemd splits ExecStart on whitespace and expands % specifiers.
        exec_line = " ".join(shlex.quote(arg).replace("%", "%%") for arg in command)
        return (
            "[Unit]\n"
            "Description=Keep the laptop awake in clamshell mode\n"
            "\n"
            "[Service]\n"
            "Type=notify\n"
            f"ExecStart={exec_line}\n"
            "Restart=on-failure\n"
            "RestartSec=5\n"
            "WatchdogSec=30\n"
            "\n"
            "[Install]\n"
            f"WantedBy={'default.target' if self.user else 'multi-user.target'}\n"
        )

    def _systemctl(self, *args):
        cmd = ["systemctl"]
        if self.user:
            cmd.append("--user")
        return _run_command(cmd + list(args), self.timeout)

    def activate(self):
        for args in (("daemon-reload",), ("enable", SYSTEMD_UNIT), ("restart", SYSTEMD_UNIT)):
            result = self._systemctl(*args)
            if result.returncode != 0:
                raise InstallError(
                    f"systemctl {' '.join(args)} failed: {result.stderr.strip()}"
                )

    def deactivate(self):
        result = self._systemctl("disable", "--now", SYSTEMD_UNIT)
        if result.returncode != 0:
            LOG.debug("systemctl disable: %s", result.stderr.strip())

    def reload(self):
        result = self._systemctl("daemon-reload")
        if result.returncode != 0:
            LOG.warning("systemctl daemon-reload failed: %s", result.stderr.strip())


# ---------------------------------------------------------------------------
# macOS: ioreg + system_profiler + pmset + launchd
# ---------------------------------------------------------------------------


def parse_clamshell_state(ioreg_output: str) -> LidState:
    match = re.search(r'"AppleClamshellState"\s*=\s*(Yes|No)', ioreg_output)
    if not match:
        raise ProbeError("AppleClamshellState not reported by ioreg")
    return LidState.CLOSED if match.group(1) == "Yes" else LidState.OPEN


def parse_display_state(profile: dict) -> DisplayState:
    """
    Inspect system_profiler SPDisplaysDataType JSON.

    Built-in panels carry spdisplays_connection_type=spdisplays_internal;
    every other display entry is external.
    """
    for gpu in profile.get("SPDisplaysDataType", []):
        for display in gpu.get("spdisplays_ndrvs", []):
            if display.get("spdisplays_connection_type") != "spdisplays_internal":
                LOG.debug("External display: %s", display.get("_name", "unknown"))
                return DisplayState.EXTERNAL_ATTACHED
    return DisplayState.EXTERNAL_ABSENT


def parse_sleep_disabled(pmset_output: str) -> bool:
    match = re.search(r"SleepDisabled\s+(\d)", pmset_output)
    return bool(match and match.group(1) == "1")


class MacProbe(StateProbe):
    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SEC):
        self.timeout = timeout

    def _query(self, cmd):
        try:
            result = _run_command(cmd, self.timeout)
        except CommandError as exc:
            raise ProbeError(str(exc)) from exc
        if result.returncode != 0:
            raise ProbeError(f"{cmd[0]} exited {result.returncode}: {result.stderr.strip()}")
        return result.stdout

    def sample(self):
        lid = parse_clamshell_state(
            self._query(["ioreg", "-r", "-k", "AppleClamshellState", "-d", "4"])
        )
        output = self._query(["system_profiler", "SPDisplaysDataType", "-json"])
        try:
            profile = json.loads(output)
        except ValueError as exc:
            raise ProbeError(f"Unparseable system_profiler output: {exc}") from exc
        return lid, parse_display_state(profile)


class PmsetInhibitor(SleepInhibitor):
    """
    Toggles the global pmset disablesleep flag (requires root).

    If sleep is already disabled when enable() runs, the resulting handle is
    borrowed and disable() will not switch sleep back on.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SEC):
        super().__init__()
        self.timeout = timeout

    def _pmset(self, *args):
        try:
            return _run_command(["pmset", *args], self.timeout)
        except CommandError as exc:
            raise InhibitorError(str(exc)) from exc

    def _acquire(self):
        if parse_sleep_disabled(self._pmset("-g").stdout):
            LOG.info("Sleep is already disabled system-wide; borrowing that assertion")
            return InhibitorHandle(token=0, borrowed=True)
        result = self._pmset("-a", "disablesleep", "1")
        if result.returncode != 0:
            raise InhibitorError(f"pmset disablesleep 1 failed: {result.stderr.strip()}")
        return InhibitorHandle(token=0)

    def _release(self, handle):
        if handle.borrowed:
            return
        result = self._pmset("-a", "disablesleep", "0")
        if result.returncode != 0:
            raise InhibitorError(f"pmset disablesleep 0 failed: {result.stderr.strip()}")


class LaunchdService(ServiceManager):
    """launchd registration: a LaunchAgent for users, a LaunchDaemon for root."""

    def __init__(self, plist_dir=None, user=None, timeout=DEFAULT_TIMEOUT_SEC):
        self.user = os.geteuid() != 0 if user is None else user
        if plist_dir is None:
            if self.user:
                plist_dir = os.path.join(os.path.expanduser("~"), "Library", "LaunchAgents")
            else:
                plist_dir = "/Library/LaunchDaemons"
        self.descriptor_path = os.path.join(plist_dir, f"{LAUNCHD_LABEL}.plist")
        self.domain = f"gui/{os.getuid()}" if self.user else "system"
        self.timeout = timeout

    def render(self, command: list) -> str:
        if self.user:
            log_path = os.path.join(
                os.path.expanduser("~"), "Library", "Logs", "clamshell.log"
            )
        else:
            log_path = "/var/log/clamshell.log"
        return plistlib.dumps(
            {
                "Label": LAUNCHD_LABEL,
                "ProgramArguments": list(command),
                "RunAtLoad": True,
                "KeepAlive": {"SuccessfulExit": False},
                "StandardOutPath": log_path,
                "StandardErrorPath": log_path,
            }
        ).decode()

    def _launchctl(self, *args):
        return _run_command(["launchctl", *args], self.timeout)

    def activate(self):
        self.deactivate()
        result = self._launchctl("bootstrap", self.domain, self.descriptor_path)
        if result.returncode != 0:
            raise InstallError(f"launchctl bootstrap failed: {result.stderr.strip()}")

    def deactivate(self):
        result = self._launchctl("bootout", f"{self.domain}/{LAUNCHD_LABEL}")
        if result.returncode != 0:
            LOG.debug("launchctl bootout: %s", result.stderr.strip())


# ---------------------------------------------------------------------------
# Service lifecycle
# ---------------------------------------------------------------------------


def is_installed(service) -> bool:
    return os.path.exists(service.descriptor_path)


def install(service, command: list, force: bool = False) -> None:
    """
    Write the service descriptor and (re)start the service.

    Re-installing an identical descriptor is a no-op rewrite followed by a
    restart.  A descriptor with different content is only replaced when
    ``force`` is set.
    """
    content = service.render(command)
    path = service.descriptor_path

    existing = None
    if os.path.exists(path):
        try:
            with open(path) as f:
                existing = f.read()
        except OSError as exc:
            raise InstallError(f"Cannot read existing {path}: {exc}") from exc

    if existing is not None and existing != content and not force:
        raise InstallError(f"{path} already exists; use 'install --force' to overwrite it")

    if existing != content:
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as f:
                f.write(content)
        except OSError as exc:
            raise InstallError(f"Cannot write {path}: {exc}") from exc
        LOG.info("Wrote service descriptor %s", path)
    else:
        LOG.info("Service descriptor %s is up to date", path)

    try:
        service.activate()
    except CommandError as exc:
        raise InstallError(str(exc)) from exc
    LOG.info("Service started")


def uninstall(service) -> None:
    """
    Stop the service and remove its descriptor.

    Succeeds when the service is not running or was never installed.
    """
    try:
        service.deactivate()
    except CommandError as exc:
        LOG.debug("Could not stop service: %s", exc)

    path = service.descriptor_path
    if not os.path.exists(path):
        LOG.info("Service not installed; nothing to remove")
        return

    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise UninstallError(f"Cannot remove {path}: {exc}") from exc
    LOG.info("Removed service descriptor %s", path)

    try:
        service.reload()
    except CommandError as exc:
        LOG.warning("Could not reload service manager: %s", exc)


def selftest(probe: StateProbe, inhibitor: SleepInhibitor) -> bool:
    """
    Exercise probe, decision and inhibitor once.

    The inhibitor is returned to the state it was found in, whatever
    happens in between.
    """
    was_active = inhibitor.active
    try:
        lid, display = probe.sample()
        mode = decide(lid, display)
        LOG.info("Selftest: lid=%s display=%s mode=%s", lid.value, display.value, mode.value)
        handle = inhibitor.enable()
        if inhibitor.enable() is not handle:
            raise InhibitorError("enable() acquired a second assertion")
    except ClamshellError as exc:
        LOG.error("Selftest failed: %s", exc)
        passed = False
    else:
        passed = True

    if not was_active and inhibitor.active:
        try:
            inhibitor.disable()
        except InhibitorError as exc:
            LOG.error("Selftest could not release the sleep assertion: %s", exc)
            passed = False

    LOG.info("Selftest %s", "passed" if passed else "FAILED")
    return passed


# ---------------------------------------------------------------------------
# Monitor loop
# ---------------------------------------------------------------------------


class ClamshellMonitor:
    """
    Drives the inhibitor from probe samples.

    Each cycle samples the probe, decides, and only calls the inhibitor
    when the decision differs from the current state.  Any error in a
    cycle is retried on the next cycle; ``failure_threshold`` consecutive
    failures raise PersistentFailureError (0 disables escalation).
    """

    def __init__(self, probe, inhibitor, failure_threshold=DEFAULT_FAILURE_THRESHOLD):
        self.probe = probe
        self.inhibitor = inhibitor
        self.failure_threshold = failure_threshold
        self.state = MonitorState.IDLE
        self.failures = 0
        self.exit_code = EXIT_OK
        self._handle = None

    def step(self) -> MonitorState:
        try:
            lid, display = self.probe.sample()
            mode = decide(lid, display)
            LOG.debug(
                "Sample: lid=%s display=%s mode=%s", lid.value, display.value, mode.value
            )
            self._apply(mode, lid, display)
        except Exception as exc:
            self.failures += 1
            if isinstance(exc, (ProbeError, InhibitorError)):
                LOG.warning("Cycle failed (%d consecutive): %s", self.failures, exc)
            else:
                # Escaping a GLib callback would silently stop the poll timer.
                LOG.exception("Unexpected error in cycle (%d consecutive)", self.failures)
            if self.failure_threshold and self.failures >= self.failure_threshold:
                raise PersistentFailureError(
                    f"{self.failures} consecutive cycles failed"
                ) from exc
            return self.state

        self.failures = 0
        return self.state

    def _apply(self, mode, lid, display):
        if mode is DesiredMode.INHIBIT and self.state is MonitorState.IDLE:
            self._handle = self.inhibitor.enable()
            self.state = MonitorState.INHIBITING
            LOG.info(
                "Lid %s, display %s: inhibiting sleep", lid.value, display.value
            )
        elif mode is DesiredMode.ALLOW and self.state is MonitorState.INHIBITING:
            self.inhibitor.disable(self._handle)
            self._handle = None
            self.state = MonitorState.IDLE
            LOG.info("Lid %s, display %s: allowing sleep", lid.value, display.value)

    def release(self) -> None:
        """Drop the assertion if one is held; used on every exit path."""
        if self.state is not MonitorState.INHIBITING:
            return
        try:
            self.inhibitor.disable(self._handle)
            LOG.info("Released sleep assertion on shutdown")
        except InhibitorError as exc:
            LOG.error("Could not release sleep assertion on shutdown: %s", exc)
        self._handle = None
        self.state = MonitorState.IDLE

    def run(self, interval: float = DEFAULT_INTERVAL_SEC) -> int:
        """Run on a GLib main loop until a shutdown signal; return the exit code."""
        if not HAVE_GLIB:
            raise ClamshellError("Please install PyGObject to run the monitor loop")

        loop = GLib.MainLoop()

        def tick():
            try:
                self.step()
            except PersistentFailureError as exc:
                LOG.error("%s; exiting so the service manager can restart us", exc)
                self.exit_code = EXIT_PERSISTENT_FAILURE
                loop.quit()
                return False
            return True

        def tick_once():
            tick()
            return False

        def on_signal(signum, _frame):
            LOG.info("Received %s, shutting down", signal.Signals(signum).name)
            loop.quit()

        previous = {
            sig: signal.signal(sig, on_signal) for sig in (signal.SIGTERM, signal.SIGHUP)
        }

        GLib.idle_add(tick_once)
        GLib.timeout_add(int(interval * 1000), tick)
        self.probe.watch(lambda: GLib.idle_add(tick_once))

        setup_watchdog()
        sd_notify("READY=1")

        try:
            loop.run()
        except KeyboardInterrupt:
            LOG.info("Interrupted, exiting")
        finally:
            self.release()
            sd_notify("STOPPING=1")
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return self.exit_code


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------


@dataclass
class Backend:
    probe: StateProbe
    inhibitor: SleepInhibitor
    service: ServiceManager


def create_backend(timeout: float = DEFAULT_TIMEOUT_SEC) -> Backend:
    """Pick probe, inhibitor and service manager for the running OS."""
    system = platform.system()

    if system == "Linux":
        return Backend(
            LinuxProbe(timeout), LogindInhibitor(timeout), SystemdService(timeout=timeout)
        )
    if system == "Darwin":
        return Backend(
            MacProbe(timeout), PmsetInhibitor(timeout), LaunchdService(timeout=timeout)
        )
    raise ClamshellError(f"Clamshell mode is not supported on {system}")


def executable_path() -> str:
    return shutil.which("clamshell") or os.path.abspath(sys.argv[0])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def cmd_run(args, backend):
    LOG.info(
        "Starting clamshell monitor (interval=%gs, failure-threshold=%s, timeout=%gs)",
        args.interval,
        args.failure_threshold or "disabled",
        args.timeout,
    )
    if HAVE_DBUS:
        dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
    monitor = ClamshellMonitor(backend.probe, backend.inhibitor, args.failure_threshold)
    return monitor.run(args.interval)


def cmd_install(args, backend):
    command = [
        executable_path(),
        "--interval",
        f"{args.interval:g}",
        "--failure-threshold",
        str(args.failure_threshold),
        "--timeout",
        f"{args.timeout:g}",
        "run",
    ]
    install(backend.service, command, force=args.force)
    return EXIT_OK


def cmd_uninstall(args, backend):
    uninstall(backend.service)
    return EXIT_OK


def cmd_selftest(args, backend):
    return EXIT_OK if selftest(backend.probe, backend.inhibitor) else EXIT_FAILURE


def cmd_status(args, backend):
    lid, display = backend.probe.sample()
    print(f"lid:       {lid.value}")
    print(f"display:   {display.value}")
    print(f"decision:  {decide(lid, display).value}")
    print(f"installed: {'yes' if is_installed(backend.service) else 'no'}")
    return EXIT_OK


COMMANDS = {
    "run": cmd_run,
    "install": cmd_install,
    "uninstall": cmd_uninstall,
    "selftest": cmd_selftest,
    "status": cmd_status,
}


def build_parser():
    """
    Build the argument parser, with environment variables as defaults.

    The service descriptor can set these through an EnvironmentFile
    (systemd) or EnvironmentVariables (launchd):

        CLAMSHELL_DEBUG=0
        CLAMSHELL_INTERVAL=2
        CLAMSHELL_FAILURE_THRESHOLD=30
        CLAMSHELL_TIMEOUT=5
    """

    def _bool_env(key: str) -> bool:
        v = os.getenv(key, "").strip().lower()
        return v in ("1", "true", "yes")

    parser = ArgumentParser(
        prog="clamshell",
        description=__doc__,
        formatter_class=RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_bool_env("CLAMSHELL_DEBUG"),
        help="Enable debug logging [env: CLAMSHELL_DEBUG]",
    )
    # String defaults pass through type=, so a bad environment value is a
    # usage error rather than a traceback.
    parser.add_argument(
        "--interval",
        type=float,
        default=os.getenv("CLAMSHELL_INTERVAL", str(DEFAULT_INTERVAL_SEC)),
        metavar="SECONDS",
        help="Seconds between state polls (default: 2) [env: CLAMSHELL_INTERVAL]",
    )
    parser.add_argument(
        "--failure-threshold",
        type=int,
        default=os.getenv("CLAMSHELL_FAILURE_THRESHOLD", str(DEFAULT_FAILURE_THRESHOLD)),
        metavar="N",
        help=(
            "Consecutive failed cycles before the daemon exits with status 3 "
            "so the service manager restarts it; 0 never exits (default: 30) "
            "[env: CLAMSHELL_FAILURE_THRESHOLD]"
        ),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=os.getenv("CLAMSHELL_TIMEOUT", str(DEFAULT_TIMEOUT_SEC)),
        metavar="SECONDS",
        help=(
            "Timeout for each OS query or helper command (default: 5) "
            "[env: CLAMSHELL_TIMEOUT]"
        ),
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.add_parser("run", help="Run the monitor in the foreground (default)")
    install_parser = commands.add_parser(
        "install", help="Register and start the background service"
    )
    install_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing service descriptor",
    )
    commands.add_parser("uninstall", help="Stop and remove the background service")
    commands.add_parser("selftest", help="Check probe and inhibitor without side effects")
    commands.add_parser("status", help="Print lid, display and the resulting decision")
    return parser


def validate_args(args) -> None:
    if args.interval <= 0:
        raise UsageError("--interval must be greater than 0")
    if args.failure_threshold < 0:
        raise UsageError("--failure-threshold must not be negative")
    if args.timeout <= 0:
        raise UsageError("--timeout must be greater than 0")


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stdout,
    )

    try:
        validate_args(args)
    except UsageError as exc:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    command = args.command or "run"
    try:
        backend = create_backend(args.timeout)
        return COMMANDS[command](args, backend)
    except ClamshellError as exc:
        LOG.error("%s failed: %s", command, exc)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
