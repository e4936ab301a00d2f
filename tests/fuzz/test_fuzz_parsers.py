import random
import string

import pytest

from strata.MODELS.container import PortMapping
from strata.PARSERS.buildfile_parser import BuildfileParser
from strata.PARSERS.ignore_parser import IgnoreRules
from strata.REGISTRY.image_reference import ImageReference
from strata.UTILS.errors import ManifestSyntaxError

KEYWORDS = ["FROM", "RUN", "COPY", "USER", "WORKDIR", "EXPOSE", "CMD", "from", "Run"]


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


def random_manifest(lines):
    out = []
    for _ in range(lines):
        out.append(f"{random.choice(KEYWORDS)} {random_string(random.randint(0, 40))}")
    return "\n".join(out)


def test_fuzz_buildfile_parser():
    parser = BuildfileParser()
    for _ in range(200):
        content = random_string(random.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ManifestSyntaxError as e:
            assert e.code == "MANIFEST_SYNTAX"


def test_fuzz_buildfile_parser_keywords():
    parser = BuildfileParser()
    for _ in range(200):
        content = "FROM scratch\n" + random_manifest(random.randint(1, 10))
        try:
            instructions = parser.parse_from_string(content)
        except ManifestSyntaxError:
            continue
        assert instructions[0].image_ref == "scratch"


def test_fuzz_ignore_rules():
    for _ in range(100):
        rules = IgnoreRules.from_string(random_string(random.randint(0, 500)))
        rules.matches("src/app.js")


def test_fuzz_references_and_ports():
    for _ in range(200):
        text = random_string(random.randint(0, 60))
        try:
            ImageReference.parse(text)
        except ValueError:
            pass
        try:
            PortMapping.parse(text)
        except ValueError:
            pass


@pytest.mark.parametrize("content", ["", "   \n\t  ", "# only a comment\n", "\\\n\\\n"])
def test_edge_cases_parsers(content):
    with pytest.raises(ManifestSyntaxError):
        BuildfileParser().parse_from_string(content)
