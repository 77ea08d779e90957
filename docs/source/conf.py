# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# add project root to sys.path for autodoc
import os
import sys

sys.path.insert(0, os.path.abspath('../..'))

from RentalLedger import __version__

# -- Project information -----------------------------------------------------

project = 'RentalLedger'
author = 'RentalLedger contributors'
copyright = f'2026, {author}'
release = __version__

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.coverage',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.autosectionlabel',
    'sphinx_markdown_builder'
]

napoleon_google_docstring = True
napoleon_use_param = False
napoleon_use_ivar = False

pygments_style = "vs"
pygments_dark_style = "stata-dark"

templates_path = ['_templates']
exclude_patterns = []

autodoc_default_options = {
    'member-order': 'groupwise',
    'show-inheritance': True,
}
autodoc_preserve_defaults = True

# -- Options for HTML output -------------------------------------------------

html_theme = 'furo'
html_theme_options = {
    "light_css_variables": {
        "color-brand-primary": "rgba(60, 120, 200, 1)",
        "color-brand-content": "rgba(60, 120, 200, 1)",
    },
    "dark_css_variables": {
        "color-brand-primary": "rgba(90, 150, 230, 1)",
        "color-brand-content": "rgba(90, 150, 230, 1)",
    },
    "navigation_with_keys": True,
}
highlight_language = "python"

html_static_path = []
