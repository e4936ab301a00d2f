import gc
import os
import sys

import psutil
import pytest

from strata.PARSERS.buildfile_parser import BuildfileParser
from strata.RUNNERS.port_proxy import PortProxy
from strata.RUNNERS.process_runner import ProcessRunner
from strata.UTILS.port_finder import get_free_port


@pytest.mark.skipif(not hasattr(psutil.Process(), "num_fds"), reason="requires num_fds")
def test_process_runner_leak(tmp_path):
    """
    Checks that ProcessRunner closes its log files.
    """
    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds()

    for i in range(50):
        runner = ProcessRunner(f"svc_{i}", log_file=str(tmp_path / f"svc_{i}.log"))
        runner.start([sys.executable, "-c", "print('hi')"], env={})
        runner.wait(timeout=10)
        runner.stop()
        del runner

    gc.collect()
    assert process.num_fds() <= initial_fds + 5


@pytest.mark.skipif(not hasattr(psutil.Process(), "num_fds"), reason="requires num_fds")
def test_port_proxy_leak():
    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds()

    for _ in range(50):
        proxy = PortProxy("127.0.0.1", get_free_port(), "127.0.0.1", 1)
        proxy.start()
        proxy.stop()

    gc.collect()
    assert process.num_fds() <= initial_fds + 5


def test_parser_memory():
    import tracemalloc

    parser = BuildfileParser()
    content = "FROM scratch\nWORKDIR /app\nCOPY . .\nRUN echo hi\nCMD node app.js\n"
    tracemalloc.start()
    parser.parse_from_string(content)
    snapshot1 = tracemalloc.take_snapshot()
    for _ in range(100):
        parser.parse_from_string(content)
    gc.collect()
    snapshot2 = tracemalloc.take_snapshot()
    total_diff = sum(stat.size_diff for stat in snapshot2.compare_to(snapshot1, 'lineno'))
    tracemalloc.stop()

    assert total_diff < 1024 * 1024
