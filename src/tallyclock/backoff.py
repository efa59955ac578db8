from numbers import Number

class Backoff(object):
    """Capped exponential delay schedule for reconnect attempts

    Arguments:
        minimum: The first delay returned by :meth:`next_delay`
        maximum: Upper limit for the delay
        factor: Multiplier applied after each delay
    """
    def __init__(self, minimum: Number = 1, maximum: Number = 30, factor: Number = 2):
        if minimum <= 0 or maximum < minimum or factor < 1:
            raise ValueError('Invalid backoff parameters')
        self.minimum = minimum
        self.maximum = maximum
        self.factor = factor
        self._next = minimum
        self.current = None

    def next_delay(self) -> Number:
        """Get the next delay and advance the schedule
        """
        delay = self._next
        self.current = delay
        self._next = min(delay * self.factor, self.maximum)
        return delay

    def reset(self):
        """Restart the schedule from :attr:`minimum`
        """
        self._next = self.minimum
        self.current = None

    @property
    def pending(self) -> Number:
        """The delay the next call to :meth:`next_delay` will return"""
        return self._next
