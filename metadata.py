"""
Off-chain metadata documents.

A token's metadata URI points at a JSON document with ``name``,
``description``, ``image`` and an ordered ``attributes`` list. The registry
only stores the pointer; these helpers build documents from a trait string
and read them back through IPFS gateways.
"""

import logging

import requests

from exceptions import MetadataError

logger = logging.getLogger(__name__)

DEFAULT_GATEWAYS = [
    "https://gateway.pinata.cloud/ipfs/",
    "https://ipfs.io/ipfs/",
    "https://dweb.link/ipfs/"
]

REQUIRED_FIELDS = ('name', 'description', 'image')


def parse_traits(traits):
    """
    Split a trait string such as ``"bg:blue;eyes:green"`` into
    ``[{'trait_type': 'bg', 'value': 'blue'}, ...]``, keeping order.
    """
    attributes = []
    for segment in traits.split(';'):
        segment = segment.strip()
        if not segment:
            continue
        if ':' not in segment:
            raise MetadataError(f"Trait {segment!r} is missing a ':' separator")
        trait_type, value = segment.split(':', 1)
        trait_type = trait_type.strip()
        if not trait_type:
            raise MetadataError(f"Trait {segment!r} has an empty trait type")
        attributes.append({'trait_type': trait_type, 'value': value.strip()})
    return attributes


def build_metadata(name, description, image, traits=''):
    return {
        'name': name,
        'description': description,
        'image': image,
        'attributes': parse_traits(traits),
    }


def resolve_uri(uri, gateway=DEFAULT_GATEWAYS[0]):
    """Map ``ipfs://<cid>`` onto an HTTP gateway; http(s) URIs pass through."""
    if uri.startswith('ipfs://'):
        path = uri[len('ipfs://'):]
        if path.startswith('ipfs/'):
            path = path[len('ipfs/'):]
        return f"{gateway}{path}"
    if uri.startswith(('http://', 'https://')):
        return uri
    raise MetadataError(f"Unsupported metadata URI: {uri}")


def fetch_metadata(uri, gateways=None, timeout=10):
    """
    Fetch and validate the metadata document at ``uri``.

    IPFS URIs are tried against each gateway in turn; the first response
    carrying the required fields wins.
    """
    gateways = gateways or DEFAULT_GATEWAYS
    if uri.startswith('ipfs://'):
        urls = [resolve_uri(uri, gateway) for gateway in gateways]
    else:
        urls = [resolve_uri(uri)]

    last_error = None
    for url in urls:
        try:
            response = requests.get(url, timeout=timeout)
            if not response.ok:
                last_error = f"{url} returned {response.status_code}"
                continue
            document = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Metadata fetch from {url} failed: {str(e)}")
            last_error = str(e)
            continue

        if not isinstance(document, dict) or not all(key in document for key in REQUIRED_FIELDS):
            last_error = f"{url} is missing required metadata fields"
            continue
        return document

    raise MetadataError(f"Could not fetch metadata from {uri}: {last_error}")
