import os
import pathlib as pl
import re
import typing as tp

# E.g. "tests/test_containers.py::TestInitialized::test_timezone[UTC] (call)"
_CURRENT_TEST_RE = re.compile(
    r"^(?P<file>.*?test_\w+\.py)(?:::(?P<cls>Test\w+))?::(?P<func>test_\w+)"
    r"(?P<params>\[.+\])?(?: \((?P<stage>\w+)\))?$"
)


class PytestTest(tp.NamedTuple):
    test_function: str
    test_file: pl.Path
    full: str
    test_class: str = ""
    test_params: str = ""
    stage: str = ""

    def __bool__(self) -> bool:
        return bool(self.test_function)


def get_current_test() -> PytestTest:
    """Get components (test file, class, function, params) of the running pytest test."""
    curr_test = os.environ.get("PYTEST_CURRENT_TEST") or ""
    if not curr_test:
        return PytestTest(test_function="", test_file=pl.Path("/nonexistent"), full="")

    match = _CURRENT_TEST_RE.match(curr_test)
    if not match:
        msg = f"Failed to parse current test '{curr_test}'"
        raise AssertionError(msg)

    return PytestTest(
        test_function=match["func"],
        test_file=pl.Path(match["file"]),
        full=curr_test,
        test_class=match["cls"] or "",
        test_params=match["params"] or "",
        stage=match["stage"] or "",
    )


def get_scenario_name() -> str:
    """Return name of the running scenario, i.e. test function name with its parameters."""
    curr_test = get_current_test()
    if not curr_test:
        msg = "Not running inside a pytest test."
        raise RuntimeError(msg)
    return f"{curr_test.test_function}{curr_test.test_params}"
