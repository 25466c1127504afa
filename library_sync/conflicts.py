from __future__ import annotations

from typing import Mapping, Optional

from library_sync.models import EnrichmentStatus, MatchState, Provider


def has_conflict(discogs: Optional[EnrichmentStatus], musicbrainz: Optional[EnrichmentStatus]) -> bool:
    """Both catalogs matched the track, but to different releases."""
    if discogs is None or musicbrainz is None:
        return False
    if discogs.state is not MatchState.SUCCESS or musicbrainz.state is not MatchState.SUCCESS:
        return False
    return discogs.release_id != musicbrainz.release_id


def conflict_for(statuses: Mapping[Provider, EnrichmentStatus]) -> bool:
    return has_conflict(statuses.get(Provider.DISCOGS), statuses.get(Provider.MUSICBRAINZ))
