from decimal import Decimal

from towing.models import Provider, Request

# Google's reference polyline: (38.5, -120.2), (40.7, -120.95), (43.252, -126.453)
SAMPLE_POLYLINE = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"

FRONT_URL = "https://cdn.example.com/checklists/front.jpg"
REAR_URL = "https://cdn.example.com/checklists/rear.jpg"


def make_provider(name="Reboques Silva", **kwargs):
    defaults = {"status": "online", "latitude": -23.55, "longitude": -46.63}
    defaults.update(kwargs)
    return Provider.objects.create(name=name, **defaults)


def make_request(status=Request.Status.PENDING, provider=None, **kwargs):
    defaults = {
        "client_id": "client-1",
        "origin_lat": -23.5505,
        "origin_lng": -46.6333,
        "destination_lat": -23.5614,
        "destination_lng": -46.6559,
        "amount": Decimal("100.00"),
        "distance_km": 3.2,
        "eta_minutes": 9,
    }
    defaults.update(kwargs)
    return Request.objects.create(status=status, provider=provider, **defaults)


def checked_items(phase_items):
    return [dict(item, checked=True) for item in phase_items]


class FakeTimer:
    def __init__(self, delay, function):
        self.delay = delay
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


class FakeTimerFactory:
    """Stands in for threading.Timer; tests fire timers by hand."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, function):
        timer = FakeTimer(delay, function)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1]
