"""
Drain the event queues by hand: one webhook bus tick, then one dispatcher tick.

Usage:
    python -m edulure_sync.scripts.dispatch_once [--recover]
"""

import argparse
import sys

from edulure_sync import create_app
from edulure_sync.services import get_services


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run one webhook bus tick and one domain event dispatcher tick")
    parser.add_argument(
        "--recover",
        action="store_true",
        help="Reset stuck dispatch rows before ticking"
    )
    args = parser.parse_args(argv)

    app = create_app(start_scheduler=False)
    with app.app_context():
        services = get_services(app)
        if args.recover:
            print(f"Recovered dispatches: {services.dispatcher.recover()}")
        print(f"Webhook deliveries claimed: {services.bus.tick()}")
        print(f"Domain event dispatches claimed: {services.dispatcher.tick()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
