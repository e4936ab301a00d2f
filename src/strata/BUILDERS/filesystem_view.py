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
In-memory file tree at one position of a layer stack.
"""
import os
import posixpath
import stat
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..MODELS.image import FileEntry, Layer, LayerDelta


def normalize_path(path: str, cwd: str = "/") -> str:
    """
    Resolves ``path`` against ``cwd`` and returns it relative to ``/``.
    ``..`` never climbs above the root.
    """
    if not path.startswith('/'):
        path = posixpath.join(cwd, path)
    resolved = posixpath.normpath('/' + path.lstrip('/'))
    return resolved.lstrip('/')


class FilesystemView:
    """
    Flattened view of a layer stack, keyed by root-relative POSIX paths.
    """

    def __init__(self, files: Optional[Dict[str, FileEntry]] = None):
        self._files: Dict[str, FileEntry] = dict(files or {})

    @classmethod
    def from_layers(cls, layers: Iterable[Layer]) -> "FilesystemView":
        view = cls()
        for layer in layers:
            view.apply(layer.delta)
        return view

    @property
    def paths(self) -> List[str]:
        return sorted(self._files)

    def get(self, path: str) -> Optional[FileEntry]:
        return self._files.get(path)

    def is_dir(self, path: str) -> bool:
        if path == "":
            return True
        prefix = path.rstrip('/') + '/'
        return any(p.startswith(prefix) for p in self._files)

    def apply(self, delta: LayerDelta) -> None:
        """
        Applies removals (whole subtrees for directories), then additions.
        """
        for removed in delta.removed:
            prefix = removed.rstrip('/') + '/'
            for path in [p for p in self._files if p == removed or p.startswith(prefix)]:
                del self._files[path]
        self._files.update(delta.files)

    def materialize(self, root: Path) -> None:
        """
        Writes every file into ``root``, which must exist.
        """
        for path, entry in sorted(self._files.items()):
            target = root / path
            target.parent.mkdir(parents=True, exist_ok=True)
            if entry.is_symlink:
                os.symlink(entry.link_target, target)
                continue
            with open(target, 'wb') as f:
                f.write(entry.data)
            os.chmod(target, entry.mode)

    def diff(self, root: Path, owner: str) -> Tuple[LayerDelta, List[str]]:
        """
        Compares a materialized directory with this view.

        New or changed files are attributed to ``owner``; files that vanished
        are recorded as removals.

        :param root: Directory previously produced by ``materialize``.
        :param owner: User the changes are attributed to.
        :return: The delta and the pre-existing paths it changes or removes.
        """
        current = snapshot_directory(root, owner)
        files: Dict[str, FileEntry] = {}
        touched: List[str] = []

        for path, entry in current.items():
            previous = self._files.get(path)
            if previous is None:
                files[path] = entry
            elif not _same_content(previous, entry):
                # a modified file keeps its owner
                files[path] = entry.model_copy(update={"owner": previous.owner})
                touched.append(path)

        removed = sorted(p for p in self._files if p not in current)
        touched.extend(removed)
        return LayerDelta(files=files, removed=tuple(removed)), sorted(touched)


def snapshot_directory(root: Path, owner: str) -> Dict[str, FileEntry]:
    """
    Reads every regular file and symlink below ``root``.
    """
    entries: Dict[str, FileEntry] = {}
    for base, dirs, filenames in os.walk(root):
        base_path = Path(base)
        names = list(filenames)
        # symlinked directories are not descended into
        for d in list(dirs):
            if (base_path / d).is_symlink():
                dirs.remove(d)
                names.append(d)
        for name in names:
            full = base_path / name
            rel = full.relative_to(root).as_posix()
            st = os.lstat(full)
            if stat.S_ISLNK(st.st_mode):
                entries[rel] = FileEntry(link_target=os.readlink(full), mode=0o777, owner=owner)
            elif stat.S_ISREG(st.st_mode):
                entries[rel] = FileEntry(data=full.read_bytes(), mode=stat.S_IMODE(st.st_mode), owner=owner)
    return entries


def _same_content(a: FileEntry, b: FileEntry) -> bool:
    if a.is_symlink or b.is_symlink:
        # symlink permission bits are not meaningful
        return a.link_target == b.link_target
    return a.data == b.data and a.mode == b.mode