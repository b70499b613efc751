import logging

import strudelcover


def test_public_api_reexports_are_accessible() -> None:
    cover = getattr(strudelcover, "cover")
    builder = getattr(strudelcover, "HierarchicalBuilder")

    assert callable(cover)
    assert builder.__name__ == "HierarchicalBuilder"
    assert set(strudelcover.__all__) <= set(dir(strudelcover))


def test_import_installs_null_handler() -> None:
    root = logging.getLogger("strudelcover")

    assert any(isinstance(handler, logging.NullHandler) for handler in root.handlers)
