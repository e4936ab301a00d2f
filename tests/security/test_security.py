import os
import sys

import pytest

from strata.BUILDERS.filesystem_view import FilesystemView, normalize_path
from strata.PARSERS.buildfile_parser import BuildfileParser
from strata.RUNNERS.process_runner import ProcessRunner
from strata.UTILS.errors import GlobMatchFailure, MissingDependencyFailure


def parse(text):
    return BuildfileParser().parse_from_string(text)


def test_command_injection_attempt(tmp_path):
    """
    Argument lists are passed to the program as-is, never through a shell.
    """
    runner = ProcessRunner(name="test_injection", log_file=str(tmp_path / "injection.log"))
    injected_file = tmp_path / "injected.txt"
    command = ["echo", "hello", ";", "touch", str(injected_file)]

    runner.start(command=command, env={"PATH": os.environ.get("PATH", "")})
    runner.wait(timeout=10)

    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_exec_form_run_is_not_shell_interpreted(builder, layer_cache, context):
    manifest = builder.build(
        parse('FROM scratch\nRUN ["echo", "hello", ";", "touch", "pwned"]\n'), str(context))
    view = FilesystemView.from_layers(layer_cache.get_layers(list(manifest.layers)))
    assert "pwned" not in view.paths


@pytest.mark.parametrize("source", ["../secret.txt", "/etc/hosts", "sub/../../secret.txt"])
def test_copy_outside_context(builder, context, source):
    (context.parent / "secret.txt").write_text("top secret")
    with pytest.raises(GlobMatchFailure):
        builder.build(parse(f"FROM scratch\nCOPY {source} /app/\n"), str(context))


def test_workdir_cannot_escape_root():
    assert normalize_path("../../etc", "/app") == "etc"
    assert normalize_path("/../../../root/.ssh") == "root/.ssh"


def test_materialize_stays_under_root(tmp_path, builder, layer_cache, context):
    manifest = builder.build(
        parse("FROM scratch\nWORKDIR /../../escape\nCOPY app.js .\n"), str(context))
    root = tmp_path / "rootfs"
    root.mkdir()
    FilesystemView.from_layers(layer_cache.get_layers(list(manifest.layers))).materialize(root)
    assert (root / "escape" / "app.js").is_file()
    assert not (tmp_path.parent / "escape").exists()


def test_missing_manifest_raises(builder, context):
    with pytest.raises(MissingDependencyFailure):
        builder.build_file(str(context / "non_existent_file_12345.txt"), str(context))


def test_layer_payload_traversal_is_ignored():
    import io
    import tarfile

    from strata.REGISTRY.layer_cache import decode_delta

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name in ("../evil.sh", "/etc/passwd", "app/ok.txt"):
            info = tarfile.TarInfo(name)
            info.size = 2
            tar.addfile(info, io.BytesIO(b"hi"))

    delta = decode_delta(buf.getvalue())
    assert list(delta.files) == ["app/ok.txt"]
