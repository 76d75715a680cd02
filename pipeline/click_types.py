"""Click Custom Types for Pipeline CLI

Domain-specific type validators for Click commands.
Provides early validation at CLI parsing time with clear error messages.
"""

import click

from exceptions import ValidationError
from pipeline.range import parse_ymd


class YMDType(click.ParamType):
    """Validates a calendar date in YYYY-MM-DD form

    Valid examples:
    - 2025-01-31
    - 2024-02-29

    Invalid examples:
    - 2025/01/31 (wrong separator)
    - 2025-1-31 (missing zero padding)
    - 2025-02-30 (not a real date)
    """

    name = "date"

    def convert(self, value, param, ctx):
        """Validate date format at CLI parse time

        Returns:
            The date string unchanged (ranges are compared as strings)

        Raises:
            click.BadParameter: If the date is malformed or does not exist
        """
        if not value:
            self.fail("date cannot be empty", param, ctx)

        try:
            parse_ymd(value)
        except ValidationError:
            self.fail(f"{value!r} is not a valid date. Format: YYYY-MM-DD (e.g., 2025-01-31)", param, ctx)

        return value


YMD = YMDType()
