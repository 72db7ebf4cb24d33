"""
Fetch album contents and original photos from an Immich server.
Handles only album lookup, asset listing and downloading.
"""

from dataclasses import dataclass
from typing import List, Optional, Dict, Any
from datetime import datetime
import logging
import re
import time
import requests

logger = logging.getLogger(__name__)

class FetchError(Exception):
    """Raised when the photo server cannot be queried or an asset cannot be downloaded."""

class AlbumNotFoundError(FetchError):
    """Raised when no album carries the configured name."""

@dataclass
class ImmichConfig:
    base_url: str
    api_key: str
    album_name: str
    asset_source: str="original" # original, preview
    timeout_seconds: int=60
    max_retries: int=3
    retry_delay_seconds: float=5.0

@dataclass
class Asset:
    id: str
    kind: str
    original_filename: Optional[str]=None
    captured_at: Optional[datetime]=None

def ensure_api_base_url(url: str) -> str:
    """Append /api to the server URL unless it already contains it."""
    trimmed = url.strip().rstrip("/")
    if re.search(r"/api(/|$)", trimmed):
        return trimmed
    return f"{trimmed}/api"

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Ignoring unparseable capture time: {value}")
        return None

def _request(path: str, config: ImmichConfig, params: Optional[Dict[str, Any]]=None) -> requests.Response:
    """GET an API path, retrying transport errors and 5xx responses."""
    url = f"{ensure_api_base_url(config.base_url)}{path}"
    headers = {"x-api-key": config.api_key}
    last_error: Optional[Exception] = None

    for attempt in range(config.max_retries):
        try:
            response = requests.get(url, headers=headers, params=params, timeout=config.timeout_seconds)
        except requests.exceptions.RequestException as e:
            last_error = e
            logger.warning(f"Request attempt {attempt+1} failed for {path}: {e}")
        else:
            if response.status_code < 500:
                try:
                    response.raise_for_status()
                except requests.exceptions.HTTPError as e:
                    raise FetchError(f"GET {path} failed with status {response.status_code}: {response.text[:200]}") from e
                return response
            last_error = FetchError(f"GET {path} returned status {response.status_code}")
            logger.warning(f"Request attempt {attempt+1} for {path} returned {response.status_code}")

        if attempt < config.max_retries - 1:
            time.sleep(config.retry_delay_seconds)

    raise FetchError(f"GET {path} failed after {config.max_retries} attempts: {last_error}") from last_error

def _json(response: requests.Response, path: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise FetchError(f"GET {path} returned invalid JSON") from e

def ping(config: ImmichConfig) -> bool:
    data = _json(_request("/server/ping", config), "/server/ping")
    return isinstance(data, dict) and data.get("res") == "pong"

def resolve_album(name: str, config: ImmichConfig) -> str:
    """Find the id of the album whose (trimmed) name equals the given name."""
    target = name.strip()
    albums = _json(_request("/albums", config), "/albums")
    if not isinstance(albums, list):
        raise FetchError("Unexpected response listing albums")

    for album in albums:
        if not isinstance(album, dict):
            continue
        if str(album.get("albumName") or "").strip() == target:
            album_id = album.get("id")
            if not album_id:
                raise FetchError(f"Album \"{target}\" has no id in the server response")
            logger.debug(f"Album '{target}' resolved to {album_id}")
            return album_id
    raise AlbumNotFoundError(f"Album \"{name}\" not found")

def list_assets(album_id: str, config: ImmichConfig) -> List[Asset]:
    """List the assets of an album in server order."""
    path = f"/albums/{album_id}"
    album = _json(_request(path, config, params={"withoutAssets": "false"}), path)
    if not isinstance(album, dict):
        raise FetchError(f"Unexpected response for album {album_id}")

    items = album.get("assets") or []
    if not isinstance(items, list):
        raise FetchError(f"Unexpected asset list for album {album_id}")

    assets = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            raise FetchError(f"Malformed asset entry in album {album_id}: {item!r}")
        exif = item.get("exifInfo")
        if not isinstance(exif, dict):
            exif = {}
        assets.append(Asset(
            id=item["id"],
            kind=item.get("type", ""),
            original_filename=item.get("originalFileName"),
            captured_at=_parse_timestamp(exif.get("dateTimeOriginal"))
        ))
    logger.info(f"Album {album_id} contains {len(assets)} assets")
    return assets

def fetch_original(asset_id: str, config: ImmichConfig) -> bytes:
    """Download the original file, or the server-rendered preview JPEG."""
    if config.asset_source == "preview":
        response = _request(f"/assets/{asset_id}/thumbnail", config, params={"size": "preview"})
    else:
        response = _request(f"/assets/{asset_id}/original", config)

    content = response.content
    if not content:
        raise FetchError(f"Asset {asset_id} downloaded empty")
    logger.debug(f"Downloaded asset {asset_id}: {len(content)} bytes")
    return content
