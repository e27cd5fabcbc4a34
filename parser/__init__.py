"""Parser package: signup-page HTML reduction."""

from parser.forms import FormControl, extract_controls, looks_like_html, outline_html

__all__ = ["FormControl", "extract_controls", "looks_like_html", "outline_html"]
