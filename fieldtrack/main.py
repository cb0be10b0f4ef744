from fieldtrack.app import FieldTrackApp
from fieldtrack.logging_setup import setup_logging


def main() -> None:
    logger = setup_logging()
    FieldTrackApp(logger).run()


if __name__ == "__main__":
    main()
