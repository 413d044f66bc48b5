"""Injectable time source so contract dates are deterministic under test"""

from datetime import datetime


class SystemClock:
    def now(self):
        return datetime.utcnow()


class FixedClock:
    """Clock frozen at a given instant; advance() moves it forward"""

    def __init__(self, instant):
        self.instant = instant

    def now(self):
        return self.instant

    def advance(self, delta):
        self.instant = self.instant + delta
