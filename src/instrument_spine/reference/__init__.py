"""ISO reference sets used by the format validator."""

from instrument_spine.reference.countries import ISO_3166_ALPHA2, is_country_code
from instrument_spine.reference.mics import ISO_10383_MICS, is_mic

__all__ = [
    "ISO_3166_ALPHA2",
    "ISO_10383_MICS",
    "is_country_code",
    "is_mic",
]
