"""Tests for ModuleLoader - executing module files in isolation."""
from __future__ import annotations
import sys
from pathlib import Path
import pytest

from cmdsync.bridge import RegistrationBridge
from cmdsync.discovery import fingerprint_bytes
from cmdsync.loader import LoadError, ModuleLoader, module_name_for
from cmdsync.models import ModuleMetadata, ModuleRecord, ModuleStatus
from conftest import BROKEN, HELLO_V1

EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


@pytest.fixture
def loader(dispatcher):
    return ModuleLoader(dispatcher)


def load(loader, root: Path, name: str):
    fingerprint = fingerprint_bytes((root / name).read_bytes())
    return loader.load(root, name, fingerprint)


def test_load_valid_module(loader, repo_dir, write_module):
    """Test loading a module with register and metadata."""
    write_module("hello.py", HELLO_V1)

    loaded = load(loader, repo_dir, "hello.py")

    assert loaded.path == "hello.py"
    assert callable(loaded.register)
    assert loaded.metadata.name == "Hello World"
    assert loaded.metadata.category == "Test"
    assert loaded.metadata.commands == ["/hello"]
    assert loaded.module_name in sys.modules
    loader.discard(loaded)
    assert loaded.module_name not in sys.modules


def test_load_without_metadata_uses_defaults(loader, repo_dir, write_module):
    write_module("nested/ping.py", '''
        def register(bot):
            pass
    ''')

    loaded = load(loader, repo_dir, "nested/ping.py")

    assert loaded.metadata.name == "ping"
    assert loaded.metadata.category == "Uncategorized"
    assert loaded.module_name.startswith("cmdsync_external.nested_ping_")
    loader.discard(loaded)


def test_load_metadata_object(loader, repo_dir, write_module):
    """Metadata may be any object exposing the fields as attributes."""
    write_module("weather.py", '''
        from dataclasses import dataclass, field

        @dataclass
        class Meta:
            name: str = "Weather"
            category: str = "Utility"
            commands: list = field(default_factory=lambda: ["/weather"])

        metadata = Meta()

        def register(bot):
            pass
    ''')

    loaded = load(loader, repo_dir, "weather.py")

    assert loaded.metadata == ModuleMetadata(name="Weather", category="Utility",
                                             commands=["/weather"])
    loader.discard(loaded)


def test_load_syntax_error(loader, repo_dir, write_module):
    write_module("bad.py", "def register(bot)\n    pass\n")

    with pytest.raises(LoadError) as exc_info:
        load(loader, repo_dir, "bad.py")

    assert exc_info.value.path == "bad.py"
    assert "syntax error at line 1" in exc_info.value.message


def test_load_import_time_exception(loader, repo_dir, write_module):
    write_module("broken.py", BROKEN)

    with pytest.raises(LoadError) as exc_info:
        load(loader, repo_dir, "broken.py")

    assert "RuntimeError" in str(exc_info.value)
    assert "broken at import" in str(exc_info.value)
    assert not any(name.startswith("cmdsync_external.broken_") for name in sys.modules)


def test_load_system_exit_is_contained(loader, repo_dir, write_module):
    """A module calling sys.exit() at import cannot stop the host."""
    write_module("exits.py", "import sys\nsys.exit(3)\n")

    with pytest.raises(LoadError) as exc_info:
        load(loader, repo_dir, "exits.py")

    assert "SystemExit" in exc_info.value.message


def test_load_cancelled_error_at_import_is_contained(loader, repo_dir, write_module):
    write_module("cancels.py", "import asyncio\nraise asyncio.CancelledError()\n")

    with pytest.raises(LoadError) as exc_info:
        load(loader, repo_dir, "cancels.py")

    assert "CancelledError during import" in exc_info.value.message
    assert not any(name.startswith("cmdsync_external.cancels_") for name in sys.modules)


def test_load_missing_register(loader, repo_dir, write_module):
    write_module("noreg.py", "metadata = {'name': 'No register'}\n")

    with pytest.raises(LoadError, match="callable register"):
        load(loader, repo_dir, "noreg.py")


def test_load_register_not_callable(loader, repo_dir, write_module):
    write_module("notcallable.py", "register = 42\n")

    with pytest.raises(LoadError, match="callable register"):
        load(loader, repo_dir, "notcallable.py")


def test_load_invalid_metadata(loader, repo_dir, write_module):
    write_module("badmeta.py", '''
        metadata = {"name": "Bad", "commands": "/notalist"}

        def register(bot):
            pass
    ''')

    with pytest.raises(LoadError, match="invalid metadata"):
        load(loader, repo_dir, "badmeta.py")


def test_module_name_differs_per_version():
    first = module_name_for("cmds/hello.py", "a" * 64)
    second = module_name_for("cmds/hello.py", "b" * 64)

    assert first != second
    assert first == "cmdsync_external.cmds_hello_aaaaaaaaaaaa"


@pytest.mark.asyncio
async def test_unload_releases_subscriptions(loader, dispatcher, repo_dir, write_module):
    write_module("hello.py", HELLO_V1)
    loaded = load(loader, repo_dir, "hello.py")
    handle = await RegistrationBridge(dispatcher).register(loaded)
    record = ModuleRecord(
        path="hello.py",
        fingerprint=loaded.fingerprint,
        metadata=loaded.metadata,
        status=ModuleStatus.LOADED,
        subscriptions=handle.subscriptions,
        module_name=loaded.module_name,
        handle=handle,
    )

    loader.unload(record)

    assert record.status is ModuleStatus.UNLOADED
    assert record.subscriptions == []
    assert dispatcher.subscriptions() == []
    assert loaded.module_name not in sys.modules
    with pytest.raises(RuntimeError):
        handle.on_text(r"^/late", lambda message, match: None)


def test_unload_tolerates_absent_subscriptions(loader, dispatcher):
    """Unloading twice, or after the dispatcher forgot a subscription, is fine."""
    sub = dispatcher.subscribe_text(r"^/gone", lambda message, match: None, "gone.py")
    dispatcher.remove(sub)
    record = ModuleRecord(path="gone.py", fingerprint="0" * 64,
                          metadata=ModuleMetadata(name="gone"),
                          status=ModuleStatus.LOADED, subscriptions=[sub])

    loader.unload(record)
    loader.unload(record)

    assert record.status is ModuleStatus.UNLOADED


@pytest.mark.asyncio
async def test_bundled_example_module_loads(loader, dispatcher, sender):
    """The example shipped in examples/hello.py satisfies the module contract."""
    loaded = load(loader, EXAMPLES_DIR, "hello.py")
    handle = await RegistrationBridge(dispatcher).register(loaded)

    assert loaded.metadata.name == "Hello World"
    assert len(handle.subscriptions) == 1
    handle.rollback()
    loader.discard(loaded)


def test_metadata_from_module_attr_rejects_wrong_types():
    with pytest.raises(ValueError):
        ModuleMetadata.from_module_attr({"name": 5}, "x")
    with pytest.raises(ValueError):
        ModuleMetadata.from_module_attr({"commands": [1, 2]}, "x")

    meta = ModuleMetadata.from_module_attr({"commands": ("/a", "/b")}, "x")
    assert meta.commands == ["/a", "/b"]
