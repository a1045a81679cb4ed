"""Exceptions raised by the jahmm engine."""


class JahmmError(Exception):
    """Base class for jahmm errors."""


class InvalidParameterError(JahmmError, ValueError):
    """Model parameters contain NaN or otherwise corrupted values."""


class RootBracketError(JahmmError):
    """No sign change could be bracketed for a 1-D root search."""


class BaumWelchError(JahmmError):
    """The Baum-Welch optimizer could not complete."""


class SeedError(JahmmError):
    """The external parameter seeder reported a failure."""
