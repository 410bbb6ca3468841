import logging
import sys

from pydantic_settings import CliApp

from lowrank_registration.aligner import Aligner, format_motions
from lowrank_registration.parameters import AlignmentParameters


def main(args: list[str]) -> None:
    params = CliApp.run(AlignmentParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)
    # matplotlib font discovery is very chatty at debug level
    logging.getLogger("matplotlib").setLevel(logging.INFO)
    result = Aligner(params).run()
    print(format_motions(result))


def cli() -> None:
    main(sys.argv[1:])


if __name__ == "__main__":
    cli()
