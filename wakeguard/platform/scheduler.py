from __future__ import annotations

import logging
from dataclasses import dataclass

from wakeguard.core.errors import SchedulingError
from wakeguard.core.runner import ps_quote, run_powershell


logger = logging.getLogger("wakeguard.platform.scheduler")


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    executable: str
    arguments: list[str]
    startup_delay_minutes: int = 2
    run_as: str = "SYSTEM"
    allow_on_batteries: bool = True
    require_network: bool = False
    description: str = ""

    def argument_string(self) -> str:
        # Task Scheduler takes one command-line string
        return " ".join(_quote_arg(a) for a in self.arguments)


def _quote_arg(arg: str) -> str:
    if arg and not any(c in arg for c in ' \t"'):
        return arg
    return '"' + arg.replace('"', '\\"') + '"'


def build_register_script(task: TaskDefinition) -> str:
    settings = ["-StartWhenAvailable"]
    if task.allow_on_batteries:
        settings += ["-AllowStartIfOnBatteries", "-DontStopIfGoingOnBatteries"]
    if task.require_network:
        settings.append("-RunOnlyIfNetworkAvailable")

    lines = [
        "$ErrorActionPreference = 'Stop'",
        f"$action = New-ScheduledTaskAction -Execute {ps_quote(task.executable)} -Argument {ps_quote(task.argument_string())}",
        "$trigger = New-ScheduledTaskTrigger -AtStartup",
        f"$trigger.Delay = {ps_quote(f'PT{int(task.startup_delay_minutes)}M')}",
        f"$principal = New-ScheduledTaskPrincipal -UserId {ps_quote(task.run_as)} -LogonType ServiceAccount -RunLevel Highest",
        f"$settings = New-ScheduledTaskSettingsSet {' '.join(settings)}",
        (
            f"Register-ScheduledTask -TaskName {ps_quote(task.name)} -Action $action -Trigger $trigger "
            f"-Principal $principal -Settings $settings -Description {ps_quote(task.description)} -Force | Out-Null"
        ),
    ]
    return "\n".join(lines)


def task_exists(name: str) -> bool:
    r = run_powershell(
        f"if (Get-ScheduledTask -TaskName {ps_quote(name)} -ErrorAction SilentlyContinue) {{ exit 0 }} else {{ exit 1 }}"
    )
    return r.ok


def register_task(task: TaskDefinition) -> None:
    r = run_powershell(build_register_script(task))
    if not r.ok:
        detail = r.stderr.strip() or r.stdout.strip() or f"exit code {r.returncode}"
        raise SchedulingError(f"Failed to register scheduled task {task.name!r}: {detail}")
    logger.info("registered task name=%s delay=%sm", task.name, task.startup_delay_minutes)


def unregister_task(name: str) -> None:
    r = run_powershell(f"Unregister-ScheduledTask -TaskName {ps_quote(name)} -Confirm:$false -ErrorAction Stop")
    if not r.ok:
        detail = r.stderr.strip() or r.stdout.strip() or f"exit code {r.returncode}"
        raise SchedulingError(f"Failed to remove scheduled task {name!r}: {detail}")
    logger.info("unregistered task name=%s", name)
