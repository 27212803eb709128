import logging
import signal
import sys
import threading

from typing import List, Optional

from spade_client import __version__, aria, config
from spade_client.boost import BoostClient
from spade_client.errors import StartupError
from spade_client.logs import setup_logging
from spade_client.reconcile import Reconciler
from spade_client.spade import SpadeClient

log = logging.getLogger("Ace")


def install_signal_handlers(cancel: threading.Event) -> None:
    def _stop(signum, frame):
        log.info(f"Caught {signal.Signals(signum).name}, shutting down")
        cancel.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv: Optional[List[str]] = None) -> int:
    options = config.parse_args(argv)
    setup_logging(options=options)

    log.info(f"--== Spade Client {__version__} ==--")
    log.info("Parameters: \n    " + config.describe(options))

    try:
        config.startup_checks(options=options)
        log.info("Connecting to Aria2c...")
        aria_client = aria.AriaClient(aria.connect(options=options), options=options)
        log.info("Connecting to Boost...")
        boost = BoostClient(options=options)
        boost.check_connection()
    except StartupError as e:
        log.error(str(e))
        return 1

    cancel = threading.Event()
    install_signal_handlers(cancel)

    log.info("Spade client successfully started - starting main loop")
    Reconciler(
        spade=SpadeClient(options=options),
        boost=boost,
        aria=aria_client,
        options=options,
        cancel=cancel,
    ).run()
    log.info("Shutting down spade client")
    return 0


if __name__ == "__main__":
    sys.exit(main())
