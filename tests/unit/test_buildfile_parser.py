import pytest

from strata.MODELS.instructions import (CopyFiles, ExposePort, FetchBase, RunCommand, SetEntrypoint,
                                        SetUser, SetWorkdir)
from strata.PARSERS.buildfile_parser import BuildfileParser
from strata.UTILS.errors import ManifestSyntaxError


def test_parse_from_string():
    content = """
    # hello-node
    from centos:centos7.6.1810

    RUN curl -sL https://rpm.nodesource.com/setup_10.x \\
        | bash -
    RUN yum install -y nodejs
    COPY . .
    RUN npm install
    CMD node app.js
    """
    parser = BuildfileParser()
    instructions = parser.parse_from_string(content)

    assert [i.directive for i in instructions] == ["FROM", "RUN", "RUN", "COPY", "RUN", "CMD"]
    assert instructions[0] == FetchBase(image_ref="centos:centos7.6.1810")

    # continuation lines are joined into one shell command
    curl = instructions[1]
    assert curl.shell
    assert curl.argv == ("/bin/sh", "-c", "curl -sL https://rpm.nodesource.com/setup_10.x | bash -")

    assert instructions[3] == CopyFiles(source_glob=".", dest_path=".")
    assert instructions[5] == SetEntrypoint.from_shell("node app.js")


def test_exec_form():
    parser = BuildfileParser()
    instructions = parser.parse_from_string(
        'FROM node:10\nRUN ["npm", "install"]\nCMD ["node", "app.js"]\n')
    assert instructions[1] == RunCommand(argv=("npm", "install"))
    assert not instructions[1].shell
    assert instructions[2].argv == ("node", "app.js")


def test_invalid_json_falls_back_to_shell_form():
    parser = BuildfileParser()
    run = parser.parse_from_string('FROM scratch\nRUN [not json]\n')[1]
    assert run.shell
    assert run.argv[-1] == "[not json]"


def test_metadata_directives():
    parser = BuildfileParser()
    instructions = parser.parse_from_string(
        "FROM node:10-alpine\nUSER node\nWORKDIR /home/node/app\nEXPOSE 3000/tcp\n")
    assert instructions[1] == SetUser(uid="node")
    assert instructions[2] == SetWorkdir(path="/home/node/app")
    assert instructions[3] == ExposePort(port=3000)


def test_copy_chown_and_json_form():
    parser = BuildfileParser()
    instructions = parser.parse_from_string(
        'FROM scratch\nCOPY --chown=node:node package*.json ./\nCOPY ["src dir", "/app/"]\n')
    assert instructions[1] == CopyFiles(source_glob="package*.json", dest_path="./", chown="node:node")
    assert instructions[2] == CopyFiles(source_glob="src dir", dest_path="/app/")


def test_render_round_trips_through_history():
    parser = BuildfileParser()
    lines = ["FROM scratch", "RUN npm install", 'CMD ["node", "app.js"]', "COPY --chown=node a.js /app/"]
    instructions = parser.parse_from_string("\n".join(lines))
    assert [i.render() for i in instructions] == lines


@pytest.mark.parametrize("content, line, fragment", [
    ("", None, "no instructions"),
    ("# only a comment\n", None, "no instructions"),
    ("RUN echo hi\n", 1, "first instruction must be FROM"),
    ("FROM a\nFROM b\n", 2, "single FROM"),
    ("FROM node:10 AS build\n", 1, "multi-stage"),
    ("FROM scratch\nENV A=1\n", 2, "unknown instruction"),
    ("FROM scratch\nRUN\n", 2, "requires at least one argument"),
    ("FROM scratch\nEXPOSE http\n", 2, "invalid port"),
    ("FROM scratch\nEXPOSE 70000\n", 2, "invalid EXPOSE"),
    ("FROM scratch\nCOPY a b c\n", 2, "exactly one source"),
    ("FROM scratch\nCOPY --from=build a b\n", 2, "unsupported COPY flag"),
    ("FROM scratch\nUSER a b\n", 2, "exactly one user"),
])
def test_syntax_errors(content, line, fragment):
    parser = BuildfileParser()
    with pytest.raises(ManifestSyntaxError) as excinfo:
        parser.parse_from_string(content)
    assert excinfo.value.line == line
    assert fragment in str(excinfo.value)


def test_line_numbers_count_comments_and_continuations():
    content = "FROM scratch\n# comment\nRUN echo \\\n  hi\n\nBOGUS x\n"
    with pytest.raises(ManifestSyntaxError) as excinfo:
        BuildfileParser().parse_from_string(content)
    assert excinfo.value.line == 6


def test_parse_file(tmp_path):
    path = tmp_path / "Dockerfile"
    path.write_text("FROM scratch\nCMD node app.js\n")
    instructions = BuildfileParser().parse(str(path))
    assert len(instructions) == 2
