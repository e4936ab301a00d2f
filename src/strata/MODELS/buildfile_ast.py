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
Models for the raw directive lines of a build manifest.
"""
from typing import List

from pydantic import BaseModel


class Directive(BaseModel):
    """
    One logical manifest line before it is turned into a BuildInstruction.
    """
    keyword: str
    arguments: str
    raw: str
    line: int


class BuildfileAST(BaseModel):
    """
    All directives of a manifest, in order.
    """
    directives: List[Directive] = []
