import asyncio
import logging

import click

from kobosync.config import resolve_config, setup_output_dir, write_run_config
from kobosync.errors import ConfigError, KoboSyncError
from kobosync.log import configure_logging
from kobosync.syncer import KoboImageSync

logger = logging.getLogger("kobosync.cli")


@click.command("kobo-imgs-sync")
@click.option("-f", "--config-file", help="JSON run-config file (looked up as given, then in ./run-configs/).")
@click.option("-s", "--api-server-url", help="KoBo API server URL.")
@click.option("-m", "--media-server-url", help="KoBo media server URL.")
@click.option("-t", "--token", help="KoBo API token.")
@click.option("-o", "--output-dir", help="Existing directory where images and run logs are written (default: ./output).")
@click.option("-d", "--delete-images", is_flag=True, default=False,
              help="Remove images instead of moving them to the run's images_deleted dir.")
@click.option("--max-request-retries", type=click.IntRange(min=1), help="Attempts per API request (default: 20).")
@click.option("--max-download-retries", type=click.IntRange(min=1), help="Attempts per image download (default: 30).")
@click.option("--request-timeout", type=click.IntRange(min=1), help="Request timeout in ms (default: 15000).")
@click.option("--connection-timeout", type=click.IntRange(min=1), help="Connection timeout in ms (default: request timeout + 3000).")
@click.option("--download-timeout", type=click.IntRange(min=1), help="Download inactivity timeout in ms (default: request timeout + 6000).")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output on the console.")
def main(verbose: bool, **options) -> None:
    """Keep a local copy of the images attached to KoBo submissions."""
    configure_logging(verbose=verbose)
    try:
        config = resolve_config(options)
        paths = setup_output_dir(config)
    except ConfigError as e:
        logger.error("%s", e)
        raise SystemExit(1)

    configure_logging(paths.run_log, verbose)
    write_run_config(config, paths)
    logger.info("mode: %s - output: %s", config.mode, paths.output)
    logger.info("run: %s", paths.current_run)

    try:
        reports = asyncio.run(KoboImageSync(config, paths).run())
    except KoboSyncError:
        logger.exception("run stopped")
        raise SystemExit(1)
    except Exception:
        logger.exception("unexpected error")
        raise SystemExit(1)

    errors = sum(len(r.errors) for r in reports)
    if errors:
        logger.warning("done with %d image errors - see %s", errors, paths.steps)
    else:
        logger.info("done")


if __name__ == "__main__":
    main()
