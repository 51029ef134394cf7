#!/usr/bin/env python3
"""
Standalone reconciler: runs the reconciliation tick on the heartbeat loop
without the ops API.
"""

import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pay2ping.core.heartbeat import register_task, start, stop
from pay2ping.core.config import get_reconcile_interval, is_reconcile_enabled
from pay2ping.core.reconciler import Reconciler


def main():
    """Main entry point for the reconciler script."""
    try:
        if not is_reconcile_enabled():
            print("❌ Reconciler requires RECONCILE_ENABLED=true")
            sys.exit(1)

        reconciler = Reconciler.from_config()

        interval = get_reconcile_interval()
        register_task("reconcile", interval, reconciler.run_tick)

        print(f"🏃 Reconciling every {interval} seconds as {reconciler.owner}")

        start()

    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
        stop()
    except Exception as e:
        print(f"💥 Critical error: {e}")
        stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
