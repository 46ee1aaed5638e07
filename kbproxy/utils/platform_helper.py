#!/usr/bin/env python3
"""Cross-platform process helpers built on psutil and asyncio subprocesses."""
import asyncio
import subprocess
import sys
from typing import Dict, List, Optional

import psutil


def is_process_running(pid: Optional[int]) -> bool:
    """Check whether a process is alive on any supported platform."""
    if pid is None:
        return False

    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def kill_process(pid: Optional[int], force: bool = False, timeout: float = 5.0) -> bool:
    """Terminate a process and its children, escalating to kill after ``timeout``."""
    if not is_process_running(pid):
        return True

    try:
        process = psutil.Process(pid)
        children = process.children(recursive=True)

        # Children first so they are not re-parented while the parent exits
        for child in children:
            try:
                if force:
                    child.kill()
                else:
                    child.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        if force:
            process.kill()
        else:
            process.terminate()

        gone, still_alive = psutil.wait_procs(children + [process], timeout=timeout)

        for p in still_alive:
            try:
                p.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return True


def terminate_process(pid: Optional[int], timeout: float = 10.0) -> bool:
    """Ask a single process to exit and wait for it; True once it is gone."""
    if not is_process_running(pid):
        return True

    try:
        process = psutil.Process(pid)
        process.terminate()
        process.wait(timeout=timeout)
    except psutil.TimeoutExpired:
        return False
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        pass
    return not is_process_running(pid)


def terminate_children(pid: Optional[int], timeout: float = 5.0) -> int:
    """Terminate every descendant of ``pid`` and return how many there were.

    The direct child is left to its owner, which reaps it through asyncio.
    """
    if not is_process_running(pid):
        return 0

    try:
        children = psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return 0

    for child in children:
        try:
            child.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    gone, still_alive = psutil.wait_procs(children, timeout=timeout)
    for p in still_alive:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    return len(children)


async def spawn_process(cmd: List[str], *, cwd: Optional[str] = None,
                        env: Optional[Dict[str, str]] = None) -> asyncio.subprocess.Process:
    """Start ``cmd`` in its own process group with piped stdout/stderr.

    A separate group keeps console signals aimed at the host from reaching the
    child directly; the supervisor decides when the child stops.
    """
    kwargs = {
        'cwd': cwd,
        'env': env,
        'stdin': asyncio.subprocess.DEVNULL,
        'stdout': asyncio.subprocess.PIPE,
        'stderr': asyncio.subprocess.PIPE,
    }
    if sys.platform == "win32":
        kwargs['creationflags'] = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
    else:
        kwargs['start_new_session'] = True

    return await asyncio.create_subprocess_exec(*cmd, **kwargs)
