import sys
from abc import ABC, abstractmethod

import colorful


class TalosOnHcloudCtlLogger(ABC):
    @abstractmethod
    def info(self, msg: str):
        """Handle a regular info-level message."""

    @abstractmethod
    def success(self, msg: str):
        """Handle a message reporting a finished command."""

    @abstractmethod
    def warning(self, msg: str):
        """Handle a warning-level message."""

    @abstractmethod
    def verbose(self, msg: str):
        """Handle a verbose-level message."""

    @abstractmethod
    def error(self, msg: str):
        """Handle an error"""


class TalosOnHcloudCtlConsoleLogger(TalosOnHcloudCtlLogger):
    def __init__(self, verbose=False):
        self._output_verbose = verbose

    def info(self, msg: str):
        print(msg)

    def success(self, msg: str):
        print(colorful.green(msg))

    def warning(self, msg: str):
        print(colorful.yellow(msg))

    def verbose(self, msg: str):
        if self._output_verbose:
            print(msg)

    def error(self, msg: str):
        print(colorful.red(msg), file=sys.stderr)
