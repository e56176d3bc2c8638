"""Dispatch errors. Routers translate these into HTTP responses."""


class DispatchError(Exception):
    """Base class for errors raised by the dispatch services."""


class InvalidCoordinatesError(DispatchError, ValueError):
    """Longitude/latitude outside the range the geo index can store."""

    def __init__(self, lng: float, lat: float):
        self.lng = lng
        self.lat = lat
        super().__init__(f"Invalid coordinates lng={lng} lat={lat}")