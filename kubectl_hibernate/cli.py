import argparse
import logging
import sys

from kubectl_hibernate.config import load_config
from kubectl_hibernate.errors import HibernationError
from kubectl_hibernate.hibernation import MODES, Hibernator
from kubectl_hibernate.output import FORMATS, output_report, output_result
from kubectl_hibernate.store import KubernetesObjectStore, ObjectStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubectl hibernate",
        description="Hibernate and resume CloudNativePG clusters",
    )

    parser.add_argument("mode", choices=MODES, help="on, off or status")
    parser.add_argument("cluster", help="Cluster name")
    parser.add_argument("-n", "--namespace", default="default")
    parser.add_argument(
        "-o",
        "--output",
        choices=FORMATS,
        default="text",
        help="Output format of status (text, json, yaml)",
    )

    parser.add_argument("--context", help="kubeconfig context to use")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument("--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None, store: ObjectStore | None = None) -> int:
    args = build_parser().parse_args(argv)

    # Logs go to stderr so `status -o json` keeps stdout parseable
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        if store is None:
            store = KubernetesObjectStore.from_config(config, context=args.context)

        hibernator = Hibernator(store, config)

        if args.mode == "status":
            output_report(hibernator.status(args.namespace, args.cluster), args.output)
        else:
            output_result(hibernator.run(args.mode, args.namespace, args.cluster))
    except HibernationError as e:
        logger.debug("hibernate %s failed", args.mode, exc_info=True)
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        return e.exit_code

    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
