from __future__ import annotations
from loguru import logger
import sys
import signal
import asyncio
import argparse
from pathlib import Path

from tallyclock.common import ConfigError, ShutdownReason
from tallyclock.config import TallyConfig, load_config, DEFAULT_FILENAME
from tallyclock.context import RunContext
from tallyclock.mediator import TallyMediator

def write_clean_exit_marker(filename: str|None):
    """Create the flag file indicating a clean exit
    """
    if not filename:
        return
    try:
        Path(filename).touch(mode=0o666)
    except OSError as exc:
        logger.warning(f'Could not write clean exit marker "{filename}": {exc}')
    else:
        logger.debug(f'Wrote clean exit marker "{filename}"')

def _watch_stdin(loop: asyncio.AbstractEventLoop, context: RunContext) -> bool:
    if not sys.stdin.isatty():
        return False
    def on_readable():
        line = sys.stdin.readline()
        if not line:
            loop.remove_reader(sys.stdin)
        elif line.strip().lower() == 'q':
            context.request_shutdown(ShutdownReason.USER)
    try:
        loop.add_reader(sys.stdin, on_readable)
    except NotImplementedError:
        return False
    return True

async def run_tally(config: TallyConfig) -> RunContext:
    """Run the tally core until a shutdown is requested

    SIGINT and SIGTERM, or a ``q`` line typed on an interactive terminal,
    request the shutdown.
    """
    context = RunContext(config=config)
    mediator = TallyMediator(context)
    mediator.bind(on_state_changed=_log_state)
    loop = asyncio.get_running_loop()
    signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, context.request_shutdown, ShutdownReason.SIGNAL)
        except NotImplementedError:
            continue
        signals.append(sig)
    watching_stdin = _watch_stdin(loop, context)
    try:
        await mediator.open()
        await context.shutdown.wait()
    finally:
        await mediator.close()
        for sig in signals:
            loop.remove_signal_handler(sig)
        if watching_stdin:
            loop.remove_reader(sys.stdin)
    return context

def _log_state(snapshot, **kwargs):
    s = ''.join(
        '-' if not line.is_set else ('1' if line.value else '0') for line in snapshot
    )
    logger.info(f'tally: {s}')

def main(args=None) -> int:
    p = argparse.ArgumentParser(description='Studio clock tally distribution')
    p.add_argument(
        'config', nargs='?', default=str(DEFAULT_FILENAME),
        help='Configuration filename (default: %(default)s)',
    )
    p.add_argument(
        '--log-level', dest='log_level', default='INFO',
        help='Log level (default: %(default)s)',
    )
    args = p.parse_args(args)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    try:
        config = load_config(Path(args.config))
    except ConfigError as exc:
        logger.error(f'Configuration error, tally services not started: {exc}')
        return 1

    context = asyncio.run(run_tally(config))
    write_clean_exit_marker(context.config.clean_exit_file)
    return 0

def run():
    sys.exit(main())

if __name__ == '__main__':
    run()
