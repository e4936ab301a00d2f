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
Parser for build-context ignore files (``.dockerignore`` syntax).
"""
import fnmatch
import posixpath
from typing import List, Tuple


class IgnoreRules:
    """
    Ordered exclusion patterns. Later patterns win; ``!`` re-includes.
    """
    def __init__(self, rules: List[Tuple[str, bool]] = None):
        """
        :param rules: (pattern, negated) pairs in file order.
        """
        self.rules = rules or []

    @classmethod
    def from_file(cls, path: str) -> "IgnoreRules":
        with open(path, 'r') as f:
            return cls.from_string(f.read())

    @classmethod
    def from_string(cls, content: str) -> "IgnoreRules":
        rules = []
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            negated = line.startswith('!')
            if negated:
                line = line[1:].strip()
            pattern = posixpath.normpath(line.lstrip('/'))
            if pattern in ('.', ''):
                continue
            rules.append((pattern, negated))
        return cls(rules)

    def matches(self, rel_path: str) -> bool:
        """
        Returns True if the context-relative path is excluded.

        A pattern that matches a parent directory excludes everything below it.
        """
        rel_path = posixpath.normpath(rel_path)
        parents = []
        parts = rel_path.split('/')
        for i in range(1, len(parts) + 1):
            parents.append('/'.join(parts[:i]))

        excluded = False
        for pattern, negated in self.rules:
            if any(self._match(candidate, pattern) for candidate in parents):
                excluded = not negated
        return excluded

    @staticmethod
    def _match(path: str, pattern: str) -> bool:
        if pattern.startswith('**/'):
            tail = pattern[3:]
            return fnmatch.fnmatchcase(path, tail) or fnmatch.fnmatchcase(path, pattern) \
                or any(fnmatch.fnmatchcase(path[i + 1:], tail)
                       for i, c in enumerate(path) if c == '/')
        # '*' must not cross directory boundaries
        if path.count('/') != pattern.count('/'):
            return False
        return fnmatch.fnmatchcase(path, pattern)

    def __bool__(self) -> bool:
        return bool(self.rules)
