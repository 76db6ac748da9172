"""infra-reconcile help action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import cast


class HelpAction:
    """Print usage of the command line tool."""

    @classmethod
    def register(
        cls,
        subparsers: SubParsersAction,  # type: ignore[type-arg]
        parser: ArgumentParser,
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser("help", help="Show this help message"),
        )
        args.set_defaults(cls=cls, parser=parser)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        parser: ArgumentParser,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        parser.print_help()
        return 0
