"""Turns whatever the user gave us into a Profile.

The input is decoded into JSON first (decompressing it if needed), then each
importer gets a chance to recognize it, in order. An importer returns None
when the input isn't in its format, and raises ProfileFormatError when the
input is in its format but can't be processed.
"""
import asyncio
import gzip
import inspect
import json
from urllib.parse import urlsplit

import requests

from profcore import config
from profcore.configured_logger import logger
from profcore.errors import (
    ProfileFetchError,
    ProfileFormatError,
    UnrecognizedProfileFormatError,
)
from profcore.import_chrome import attempt_to_convert_chrome_profile
from profcore.profile_schema import Profile

GZIP_MAGIC = b'\x1f\x8b'


def attempt_to_load_native_profile(json_data, profile_url=None):
    """Accepts profiles that are already in the processed format."""
    if not isinstance(json_data, dict) or 'meta' not in json_data or \
            'threads' not in json_data:
        return None
    return Profile.from_json(json_data)


# Tried in order, the first one that doesn't return None wins.
IMPORTERS = [
    attempt_to_load_native_profile,
    attempt_to_convert_chrome_profile,
]


def decode_profile_input(data):
    """Returns the JSON value held by `data`, which is bytes (possibly
    gzipped), text, or an already parsed JSON value."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data)
        if data.startswith(GZIP_MAGIC):
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError) as e:
                raise ProfileFormatError(
                    'could not decompress the profile: {}'.format(e)) from e
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise UnrecognizedProfileFormatError() from e
    if isinstance(data, str):
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise UnrecognizedProfileFormatError() from e
    return data


async def unserialize_profile_of_arbitrary_format(data, profile_url=None):
    json_data = decode_profile_input(data)
    for importer in IMPORTERS:
        result = importer(json_data, profile_url)
        if result is None:
            continue
        logger.debug('Profile recognized by %s', importer.__name__)
        if inspect.isawaitable(result):
            result = await result
        return result
    raise UnrecognizedProfileFormatError()


def is_url(source: str) -> bool:
    return urlsplit(source).scheme in ('http', 'https')


def fetch_profile(url: str) -> bytes:
    logger.info('Fetching %s', url)
    try:
        response = requests.get(url, timeout=config.FETCH_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ProfileFetchError(url, e) from e
    return response.content


def _read_file(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


async def load_profile(source: str) -> Profile:
    """Loads a profile from a file path or an http(s) URL. The download or
    read runs in the default executor, so several loads can overlap."""
    loop = asyncio.get_running_loop()
    if is_url(source):
        data = await loop.run_in_executor(None, fetch_profile, source)
    else:
        data = await loop.run_in_executor(None, _read_file, source)
    return await unserialize_profile_of_arbitrary_format(data,
                                                         profile_url=source)
