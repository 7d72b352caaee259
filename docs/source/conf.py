"""configuration file for Sphinx documentation."""

import pathlib
import sys

src_path = pathlib.Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(src_path))


project = "kinepy"
release = "0.1.0"


extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.viewcode",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
]
autosummary_generate = True

html_theme = "furo"

html_domain_indices = ["py-modindex"]
modindex_common_prefix = ["kinepy."]

napoleon_google_docstring = True
napoleon_include_init_with_doc = False

autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
}

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
    "polars": ("https://docs.pola.rs/api/python/stable/", None),
}
