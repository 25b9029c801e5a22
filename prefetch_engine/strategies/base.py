"""Strategy interface."""


class Strategy:
    """Decides which users to refresh on the next scheduler tick.

    `schedule()` must drain its own state: a pick is returned exactly once.
    """

    name = "base"

    def schedule(self) -> list[tuple[str, str]]:
        raise NotImplementedError
