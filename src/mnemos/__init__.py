"""mnemos: spaced-repetition scheduling engine."""

from mnemos.consts import VERSION

__version__ = VERSION
