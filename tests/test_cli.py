import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

from zonechain import cli
from zonechain.errors import ResourceError
from zonechain.results import ResultSet
from zonechain.workflow import LocationFailure, LocationSuccess, WorkflowReport


class CliTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config = Path(self.tmp.name) / "workflow.json"
        self.config.write_text(
            json.dumps({"input": {"folder": self.tmp.name, "locations": ["A", "B"]}}), encoding="utf-8"
        )
        dotenv = patch("zonechain.cli.load_dotenv")
        dotenv.start()
        self.addCleanup(dotenv.stop)

    def _run(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_invalid_configuration_exits_with_2(self):
        code, _, err = self._run("--config", str(Path(self.tmp.name) / "missing.json"))
        self.assertEqual(code, 2)
        self.assertIn("ERROR", err)

    def test_successful_run_exits_with_0(self):
        report = WorkflowReport([LocationSuccess("A", ResultSet({"zone": "zone_1"})), LocationSuccess("B", ResultSet())])
        with patch("zonechain.cli.WorkflowDriver") as driver:
            driver.return_value.run.return_value = report
            code, out, _ = self._run("--config", str(self.config), "--host", "pg", "--db", "work")
        self.assertEqual(code, 0)
        working = driver.call_args[0][1]
        self.assertEqual((working.host, working.database), ("pg", "work"))
        self.assertIn("- A: 1 table(s) (zone)", out)

    def test_failed_location_exits_with_1(self):
        report = WorkflowReport([LocationSuccess("A", ResultSet()), LocationFailure("B", "boom")])
        with patch("zonechain.cli.WorkflowDriver") as driver:
            driver.return_value.run.return_value = report
            code, _, err = self._run("--config", str(self.config))
        self.assertEqual(code, 1)
        self.assertIn("WARNING: B failed: boom", err)

    def test_resource_error_exits_with_1(self):
        with patch("zonechain.cli.WorkflowDriver") as driver:
            driver.return_value.run.side_effect = ResourceError("cannot connect")
            code, _, err = self._run("--config", str(self.config))
        self.assertEqual(code, 1)
        self.assertIn("cannot connect", err)


if __name__ == "__main__":
    unittest.main()
