"""Import sanity tests.

These lightweight tests verify that the pipeline entrypoint and core modules
can be imported without errors — the minimum bar for a deploy.
"""

import pytest


def test_pipeline_module_imports():
    """The pipeline module must import without errors (load_dotenv runs here)."""
    import listing_pipeline  # noqa: F401


def test_public_entry_points():
    """Symbols the web layer calls must be importable."""
    from listing_pipeline import (
        fetch_area_data,
        fetch_area_price_context,
        generate_listing_content,
        parse_generate_input,
    )
    assert fetch_area_data is not None
    assert fetch_area_price_context is not None
    assert generate_listing_content is not None
    assert parse_generate_input is not None


def test_error_types_importable():
    from listing_pipeline import InvalidListingInput, ListingGenerationError
    assert issubclass(ListingGenerationError, RuntimeError)
    assert issubclass(InvalidListingInput, ValueError)


def test_cli_entry_point():
    from listing_pipeline import main
    assert callable(main)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
