"""
Heartbeat - fixed-interval driver for the reconciliation tick.
A failing task is logged and retried on its next interval; the loop keeps running.
"""

import time
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from util.logging import logger

from .config import is_reconcile_enabled, validate_reconciler_config


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run, lock, ...}
running = False
shutdown_event = None
_thread: Optional[threading.Thread] = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None,
        "last_run_at": None,
        "last_error": None,
        "runs": 0,
        "failures": 0,
        "lock": threading.Lock(),
    }

    logger.info(f"Registered heartbeat task '{name}' (every {interval_sec}s)")


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.info(f"Unregistered heartbeat task '{name}'")


def list_tasks():
    """Return list of registered task names."""
    return list(tasks.keys())


def start():
    """
    Start the heartbeat loop in the calling thread.

    Checks task intervals every half second and runs tasks when due. Blocks
    until stop() is called or the process is interrupted.
    """
    global running, shutdown_event

    if not is_reconcile_enabled():
        logger.info("Heartbeat disabled (RECONCILE_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_reconciler_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()

    logger.info(f"Starting heartbeat loop with tasks: {list(tasks.keys())}")

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if shutdown_event.is_set():
                    break
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except Exception as e:
                        # Error isolation - log error but continue loop
                        logger.error(f"Heartbeat task '{name}' failed: {e}")

            shutdown_event.wait(0.5)

    except KeyboardInterrupt:
        logger.info("Heartbeat interrupted by user")
    finally:
        running = False
        logger.info("Heartbeat loop stopped")


def start_in_background() -> Optional[threading.Thread]:
    """Run start() on a daemon thread (used when hosting the heartbeat inside the API process)."""
    global _thread

    if not is_reconcile_enabled():
        logger.info("Heartbeat disabled (RECONCILE_ENABLED=false). Not starting background thread.")
        return None

    if _thread is not None and _thread.is_alive():
        raise RuntimeError("Heartbeat already running")

    _thread = threading.Thread(target=start, name="pay2ping-heartbeat", daemon=True)
    _thread.start()
    return _thread


def stop(timeout: float = 5.0):
    """Stop the heartbeat loop gracefully."""
    global running, _thread

    if not running:
        logger.info("Heartbeat not running")
        return

    logger.info("Stopping heartbeat loop...")
    running = False

    if shutdown_event:
        shutdown_event.set()

    if _thread is not None and _thread is not threading.current_thread():
        _thread.join(timeout)
        _thread = None

    logger.info("Heartbeat stopped")


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict) -> bool:
    """
    Execute a task and record timing.

    Returns False without running if the same task is already in flight (a
    manual trigger overlapping a scheduled run). Failures are re-raised as
    RuntimeError after being recorded.
    """
    lock = task_info.get("lock")
    if lock is not None and not lock.acquire(blocking=False):
        logger.warning(f"Heartbeat task '{name}' still running, skipping this run")
        return False

    start_time = time.monotonic()
    try:
        task_info["func"]()
        end_time = time.monotonic()
        task_info["last_error"] = None
        logger.log_heartbeat_task(name, start_time, end_time)
    except Exception as e:
        end_time = time.monotonic()
        duration = end_time - start_time
        task_info["failures"] = task_info.get("failures", 0) + 1
        task_info["last_error"] = str(e)
        logger.log_heartbeat_task(name, start_time, end_time, status="failed", details={"error": str(e)[:200]})
        raise RuntimeError(f"Task '{name}' failed after {duration:.2f}s: {e}") from e
    finally:
        # a failed run still waits a full interval before the next attempt
        task_info["last_run"] = time.monotonic()
        task_info["last_run_at"] = datetime.now(timezone.utc).isoformat()
        task_info["runs"] = task_info.get("runs", 0) + 1
        if lock is not None:
            lock.release()

    if end_time - start_time > task_info["interval"]:
        logger.warning(f"Heartbeat task '{name}' took {end_time - start_time:.1f}s, longer than its "
                       f"{task_info['interval']}s interval")
    return True


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None
        logger.info(f"Reset heartbeat task '{name}' (will run immediately)")


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_reconcile_enabled():
        return {"status": "disabled", "reason": "RECONCILE_ENABLED=false"}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "last_run_at": info.get("last_run_at"),
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None,
                "runs": info.get("runs", 0),
                "failures": info.get("failures", 0),
                "last_error": info.get("last_error"),
            }
            for name, info in tasks.items()
        },
    }
