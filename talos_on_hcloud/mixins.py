from typing import List, Sequence


class WarningMessagesMixin:
    """Collects operator warnings that are reported together with command results.

    Components that drive other components (the scaler driving nodes, the cluster driving the
    scaler) pull their children's warnings in with `merge_warning_messages`.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)

        self._warning_messages: List[str] = []

    def get_warning_messages(self) -> Sequence[str]:
        return tuple(self._warning_messages)

    def add_warning_message(self, message: str, *args) -> None:
        """Add %s-style formatted warning, unless the same warning is already collected."""

        message = message % args if args else message

        if message not in self._warning_messages:
            self._warning_messages.append(message)

    def merge_warning_messages(self, *sources: "WarningMessagesMixin") -> None:
        for source in sources:
            for message in source.get_warning_messages():
                self.add_warning_message(message)
