"""
Test harness shared by the test modules.

The classes run under pytest (setup_method/teardown_method hooks) and also
standalone through TestRunner, which prints a rich summary.
"""

import os
import shutil
import tempfile
import traceback

from rich.console import Console

from mkimage import ImageBuilder
from sysvapi import FileSystem


class RaisesContext:
    def __init__(self, exc_type):
        self.exc_type = exc_type
        self.exception = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        if exc_type is None:
            raise AssertionError(f"Expected exception {self.exc_type.__name__}, but no exception was raised")

        if not issubclass(exc_type, self.exc_type):
            raise AssertionError(
                f"Expected exception {self.exc_type.__name__}, but got {exc_type.__name__}"
            )

        self.exception = exc_value
        return True


class TestCase:
    """Base class with a scratch directory and an image opened per test."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="unixtool-test-")
        self.image_path = os.path.join(self.tmpdir, "test_fs.img")
        self.fs = None

    def tearDown(self):
        if self.fs is not None:
            self.fs.close_filesystem()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def setup_method(self, method):
        self.setUp()

    def teardown_method(self, method):
        self.tearDown()

    def mount(self, builder: ImageBuilder) -> FileSystem:
        """Write the builder's image and open it"""
        builder.save(self.image_path)
        if self.fs is not None:
            self.fs.close_filesystem()
        self.fs = FileSystem(self.image_path)
        return self.fs

    def assertEqual(self, a, b, msg=""):
        if a != b:
            raise AssertionError(f"{msg} | {a!r} != {b!r}")

    def assertTrue(self, x, msg=""):
        if not x:
            raise AssertionError(f"{msg} | Expression is not True")

    def assertIsNone(self, x, msg=""):
        if x is not None:
            raise AssertionError(f"{msg} | {x!r} is not None")

    def assertRaises(self, exc_type, func=None, *args, **kwargs):
        if func is None:
            return RaisesContext(exc_type)
        try:
            func(*args, **kwargs)
        except exc_type:
            return
        except Exception as e:
            raise AssertionError(
                f"Expected exception {exc_type.__name__}, but got {e.__class__.__name__}"
            )
        raise AssertionError(
            f"Expected exception {exc_type.__name__}, but no exception was raised"
        )


class TestRunner:
    """Finds and runs all test_ methods of the given classes."""

    __test__ = False

    def __init__(self):
        self.console = Console()
        self.tests_run = 0
        self.failures = []

    def run(self, test_case_class):
        self.console.print(f"[bold yellow]Running tests for {test_case_class.__name__}[/bold yellow]")
        test_instance = test_case_class()

        test_methods = [m for m in dir(test_instance) if m.startswith("test_")]

        for method_name in test_methods:
            self.tests_run += 1
            try:
                test_instance.setUp()
                getattr(test_instance, method_name)()
                self.console.print(f"  [green]✓[/green] {method_name}")
            except Exception:
                self.failures.append((method_name, traceback.format_exc()))
                self.console.print(f"  [bold red]✗ FAILED[/bold red]: {method_name}")
            finally:
                test_instance.tearDown()

        self.console.print("-" * 40)

    def summary(self):
        self.console.print("\n[bold]Test Summary[/bold]")
        if self.failures:
            self.console.print(f"[bold red]FAILURES ({len(self.failures)}):[/bold red]")
            for name, tb in self.failures:
                self.console.print(f"\n--- Failure in {name} ---")
                self.console.print(tb, style="red", markup=False)

        passed = self.tests_run - len(self.failures)
        color = "green" if passed == self.tests_run else "yellow"
        self.console.print(f"[{color}]Ran {self.tests_run} tests. {passed} passed, {len(self.failures)} failed.[/{color}]")
        return not self.failures
