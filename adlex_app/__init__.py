"""AdLex: asynchronous 薬機法 compliance checks for advertising copy."""

__version__ = "0.1.0"
