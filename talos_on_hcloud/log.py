import gzip
import os
import shutil
from logging.handlers import RotatingFileHandler

GZIP_EXTENSION = ".gz"


class ZippingRotatingFileHandler(RotatingFileHandler):
    """Keeps a log file per command run, older runs are stored as `<name>.<n>.gz`.

    With `rollover_on_start`, a non-empty log file left by the previous run is rotated away
    when the handler opens, so every `talos-on-hcloud` invocation starts with a fresh file.
    """

    def __init__(self, *args, rollover_on_start: bool = True, compresslevel: int = 9, **kwargs):
        self.compresslevel = compresslevel

        super().__init__(*args, **kwargs)

        if rollover_on_start and self.stream.tell():
            self.doRollover()

    def namer(self, default_name: str) -> str:
        return f"{default_name}{GZIP_EXTENSION}"

    def rotator(self, source: str, dest: str) -> None:
        if not os.path.exists(source):
            return

        with open(source, "rb") as source_f, gzip.open(
            dest, "wb", compresslevel=self.compresslevel
        ) as dest_f:
            shutil.copyfileobj(source_f, dest_f)

        os.remove(source)
