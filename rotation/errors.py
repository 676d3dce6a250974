"""
rotation/errors.py — Exception types and outcome reason codes.

Exceptions cover faults (bad configuration, an unreachable track store,
operator actions on unknown requests, bad or clashing track ids).  Expected outcomes such as an empty
slot or a policy rejection are reported through reason codes on the returned
outcome objects instead.
"""


class RotationError(Exception):
    """Base class for all rotation engine errors."""


class ConfigError(RotationError):
    """Clockwheel or request-policy configuration is invalid."""


class MetadataUnavailable(RotationError):
    """The track metadata store could not be read or written."""


class RequestNotFound(RotationError):
    """No request log entry exists with the given id."""


class InvalidRequestState(RotationError):
    """The request is not in a state that allows the operation."""


class InvalidTrackId(RotationError):
    """A track id is empty or would escape the track directory."""


class DuplicateTrack(RotationError):
    """A track with the given id already exists."""


# ---------------------------------------------------------------------------
# Selection reason codes
# ---------------------------------------------------------------------------

NO_SLOT_AVAILABLE    = "no_slot_available"
NO_ELIGIBLE_TRACK    = "no_eligible_track"
METADATA_UNAVAILABLE = "metadata_unavailable"
CONFIG_INVALID       = "config_invalid"
MANUAL_MODE          = "manual_mode"

# ---------------------------------------------------------------------------
# Admission reason codes (rule names, in evaluation order)
# ---------------------------------------------------------------------------

UNKNOWN_TRACK        = "unknown_track"
BLACKLIST_SONG       = "blacklist_song"
BLACKLIST_CATEGORY   = "blacklist_category"
ACTIVE_HOURS         = "active_hours"
SONG_DAY_LIMIT       = "song_day_limit"
SONG_MIN_GAP         = "song_min_gap"
ARTIST_HOUR_LIMIT    = "artist_hour_limit"
ARTIST_MIN_GAP       = "artist_min_gap"
ALBUM_DAY_LIMIT      = "album_day_limit"
REQUESTER_DAY_LIMIT  = "requester_day_limit"
REQUESTER_HOUR_LIMIT = "requester_hour_limit"
OPERATOR_REJECTED    = "operator_rejected"
