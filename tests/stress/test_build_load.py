import sys
import time

from strata.MODELS.container import PortMapping
from strata.PARSERS.buildfile_parser import BuildfileParser
from strata.RUNNERS.container_runtime import ContainerRuntime
from strata.UTILS.port_finder import get_free_port


def test_large_manifest_parsing():
    content = "FROM scratch\n"
    for i in range(2000):
        content += f"RUN echo step {i} \\\n    && echo more\n"
    start_time = time.time()
    instructions = BuildfileParser().parse_from_string(content)
    end_time = time.time()

    assert len(instructions) == 2001
    assert end_time - start_time < 2.0


def test_many_layers_cached(builder, context):
    content = "FROM scratch\n" + "".join(f"RUN echo {i} > file{i}.txt\n" for i in range(30))
    instructions = BuildfileParser().parse_from_string(content)

    first = builder.build_with_report(instructions, str(context))
    second = builder.build_with_report(instructions, str(context))
    assert first.manifest.digest == second.manifest.digest
    assert second.cache_hits == 31


def test_stress_containers(settings, layer_cache, image_store, builder, context):
    """
    Runs 20 containers from one image, each with its own address and host port.
    """
    manifest = BuildfileParser().parse_from_string(
        f'FROM scratch\nCMD ["{sys.executable}", "-c", "import time; time.sleep(5)"]\n')
    digest = builder.build(manifest, str(context)).digest
    runtime = ContainerRuntime(settings, layer_cache, image_store)
    try:
        for _ in range(20):
            runtime.run(digest, [PortMapping(host_port=get_free_port(), container_port=3000)])
        status = runtime.ps()
        assert len(status) == 20
        assert len({row["address"] for row in status}) == 20
    finally:
        runtime.stop_all()
    assert runtime.ps() == []
