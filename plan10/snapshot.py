"""
Power snapshot adapter.

Turns the text printed by ``pmset -g``, ``pmset -g batt`` and
``pgrep -x caffeinate`` into a typed PowerSnapshot, locally or over an
open session. This is the only place that parses tool output.
"""

import asyncio
import logging
import re
from typing import Optional

from .errors import ExecutionError
from .models import PowerSnapshot, PowerSource
from .ssh_client import RemoteExecutor, Session

logger = logging.getLogger(__name__)

PMSET_SETTINGS = ("pmset", "-g")
PMSET_BATTERY = ("pmset", "-g", "batt")
PGREP_CAFFEINATE = ("pgrep", "-x", "caffeinate")

# pmset key -> (snapshot field, is boolean flag)
_PMSET_KEYS = {
    "sleep": ("sleep", False),
    "disksleep": ("disk_sleep", False),
    "standby": ("standby", True),
    "hibernatemode": ("hibernate_mode", False),
    "powernap": ("power_nap", True),
    "haltlevel": ("halt_level", False),
    "haltafter": ("halt_after", False),
    "autopoweroff": ("auto_power_off", True),
}

# Keys that only exist in the battery power profile
_BATTERY_ONLY_KEYS = {"haltlevel", "haltafter"}

_LEADING_INT = re.compile(r"^-?\d+")
_PERCENT = re.compile(r"(\d{1,3})%")
_FIX = re.compile(r"^set\s+(\w+)\s+(\S+)$")


def parse_pmset_settings(output: str) -> dict[str, str]:
    """Map each ``key value`` line of ``pmset -g`` to its raw value text."""
    settings: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) == 2:
            settings[parts[0]] = parts[1].strip()
    return settings


def parse_battery(output: str) -> tuple[Optional[int], PowerSource]:
    """Charge percentage (None without a battery) and current power source."""
    source = PowerSource.BATTERY if "Battery Power" in output else PowerSource.AC
    pct = None
    for line in output.splitlines():
        if "InternalBattery" in line or "%" in line:
            match = _PERCENT.search(line)
            if match:
                pct = min(int(match.group(1)), 100)
                break
    return pct, source


def parse_pid(output: str) -> Optional[int]:
    for line in output.split():
        if line.isdigit():
            return int(line)
    return None


def build_snapshot(pmset_output: str, battery_output: str, pgrep_output: str = "") -> PowerSnapshot:
    raw = parse_pmset_settings(pmset_output)
    fields: dict = {}
    for key, (name, is_flag) in _PMSET_KEYS.items():
        value = raw.get(key)
        if value is None:
            continue
        match = _LEADING_INT.match(value)
        if match is None:
            logger.debug("Ignoring non-numeric pmset value %s=%r", key, value)
            continue
        number = int(match.group())
        fields[name] = number != 0 if is_flag else number

    pct, source = parse_battery(battery_output)
    return PowerSnapshot(
        **fields,
        battery_pct=pct,
        power_source=source,
        caffeinate_pid=parse_pid(pgrep_output),
    )


async def fetch_remote_snapshot(executor: RemoteExecutor, session: Session) -> PowerSnapshot:
    """
    Read the power snapshot of the host behind ``session``.

    Raises:
        NonZeroExit: If ``pmset -g`` itself fails
        CommandTimeout, Disconnected
    """
    settings = (await executor.run_command(session, " ".join(PMSET_SETTINGS))).check()
    battery = await executor.run_command(session, " ".join(PMSET_BATTERY))
    # pgrep exits 1 when nothing matches
    caffeinate = await executor.run_command(session, " ".join(PGREP_CAFFEINATE))
    return build_snapshot(
        settings.stdout,
        battery.stdout if battery.success else "",
        caffeinate.stdout if caffeinate.success else "",
    )


async def _run_local(*argv: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    stdout, _ = await process.communicate()
    return process.returncode, stdout.decode("utf-8", errors="replace")


async def collect_local_snapshot() -> PowerSnapshot:
    """
    Read the power snapshot of this machine.

    Raises:
        ExecutionError: If pmset is unavailable or fails
    """
    try:
        code, settings = await _run_local(*PMSET_SETTINGS)
        if code != 0:
            raise ExecutionError(f"pmset -g exited with status {code}")
        code, battery = await _run_local(*PMSET_BATTERY)
        battery = battery if code == 0 else ""
        code, pids = await _run_local(*PGREP_CAFFEINATE)
        pids = pids if code == 0 else ""
    except FileNotFoundError as e:
        raise ExecutionError(f"Power tools not available on this host: {e}") from e
    return build_snapshot(settings, battery, pids)


def pmset_command(fix_command: str) -> Optional[str]:
    """
    Render an abstract ``set <key> <value>`` fix as a pmset invocation.

    Returns None for fixes that are not pmset settings.
    """
    match = _FIX.match(fix_command.strip())
    if match is None:
        return None
    key, value = match.groups()
    scope = "-b" if key in _BATTERY_ONLY_KEYS else "-a"
    return f"sudo pmset {scope} {key} {value}"
