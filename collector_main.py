"""Entry point for the reference collector."""

import argparse
import logging
import sys

from error_pipeline.collector import create_app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reference error report collector")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        stream=sys.stderr,
    )
    app = create_app()
    app.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
