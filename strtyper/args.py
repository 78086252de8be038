from argparse import ArgumentParser, ArgumentTypeError, RawDescriptionHelpFormatter
import sys
from typing import List


class HelpfulArgumentParser(ArgumentParser):
    """An ArgumentParser that prints full help on errors."""

    def __init__(self, *args, **kwargs):
        if "formatter_class" not in kwargs:
            kwargs["formatter_class"] = RawDescriptionHelpFormatter
        super().__init__(*args, **kwargs)

    def error(self, message):
        self.print_help(sys.stderr)
        args = {"prog": self.prog, "message": message}
        self.exit(2, "%(prog)s: error: %(message)s\n" % args)


def comma_separated(value: str) -> List[str]:
    """Argument type for lists such as chrX,chrY"""
    items = [item.strip() for item in value.split(",")]
    if not all(items):
        raise ArgumentTypeError(f"Empty item in comma-separated list {value!r}")
    return items
