# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Content hashing helpers for layers and manifests.
"""
import hashlib
import json
from typing import Any, List, Optional, Sequence

PREFIX = "sha256:"


def sha256_bytes(data: bytes) -> str:
    """Returns ``sha256:<hex>`` for the given bytes."""
    return PREFIX + hashlib.sha256(data).hexdigest()


def canonical_json(obj: Any) -> bytes:
    """UTF-8 JSON with sorted keys and no whitespace, stable across runs."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def chain_hash(parent: Optional[str], instruction_key: Any, inputs: Sequence[Sequence[str]] = ()) -> str:
    """
    Computes a layer's content hash.

    The hash covers the parent layer's hash, the instruction itself and the
    digests of every file the instruction references, so the same inputs at
    the same stack position always produce the same key.

    Args:
        parent: Content hash of the previous layer, or None for the first one.
        instruction_key: JSON-able description of the instruction.
        inputs: ``[name, digest, ...]`` rows for referenced content.

    Returns:
        ``sha256:<hex>`` content hash.
    """
    rows: List[List[str]] = sorted(list(row) for row in inputs)
    return sha256_bytes(canonical_json({
        "parent": parent,
        "instruction": instruction_key,
        "inputs": rows,
    }))


def hex_part(digest: str) -> str:
    """Strips the ``sha256:`` prefix, validating the digest shape."""
    if not digest.startswith(PREFIX):
        raise ValueError(f"Not a sha256 digest: {digest}")
    value = digest[len(PREFIX):]
    if len(value) != 64 or any(c not in "0123456789abcdef" for c in value):
        raise ValueError(f"Malformed digest: {digest}")
    return value


def short_hash(digest: str, length: int = 12) -> str:
    """Truncated hex digest for display."""
    if digest.startswith(PREFIX):
        digest = digest[len(PREFIX):]
    return digest[:length]
