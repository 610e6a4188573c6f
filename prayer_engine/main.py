import argparse
import logging
import sys

from prayer_engine.core.app import LOG_FORMAT, PrayerEngineApp
from prayer_engine.prayer.display import format_time_until, next_prayer


def setup_basic_logging():
    """Setup basic stdout logging before config is loaded"""
    root_logger = logging.getLogger()
    if not root_logger.handlers:  # Only add handler if none exists
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.DEBUG)
        logging.debug("Basic logging initialized")


def print_times(app: PrayerEngineApp) -> None:
    view = app.engine.warm_start() or app.engine.get_prayer_times()
    now = app.engine.now()
    print(f"{view.date}  {view.convention}  ({view.timezone}, location: {view.location_quality})")
    for entry in view.prayers:
        mark = "x" if entry.completed else " "
        print(f"[{mark}] {entry.name:<8} {entry.arabic_name:<8} {entry.formatted:>8}  {format_time_until(entry.instant, now)}")
    upcoming = next_prayer(view, now)
    if upcoming:
        print(f"Next: {upcoming.name} in {format_time_until(upcoming.instant, now)}")
    for warning in view.warnings:
        print(f"Warning: {warning}")


def main(argv=None) -> None:
    setup_basic_logging()

    parser = argparse.ArgumentParser(description='Prayer time engine')
    parser.add_argument('--config',
                        help='Path to config file (default: ~/.prayer_engine/config.yaml)')
    parser.add_argument('--once', action='store_true',
                        help='Print today\'s prayer times and exit')
    args = parser.parse_args(argv)

    app = PrayerEngineApp(config_path=args.config, watch_config=not args.once)
    if args.once:
        try:
            print_times(app)
        finally:
            app.stop()
        return
    app.run()


if __name__ == "__main__":
    main()
