from catalog_sync.field_spec import parse_transforms
from catalog_sync.transformers import apply_transforms, replace, slugify, strip_html, trim, truncate


def test_strip_html_collapses_whitespace():
    assert strip_html("<p>Hello <b>world</b></p>\n") == "Hello world"


def test_slugify_strips_accents():
    assert slugify("Crème Brûlée 100%") == "creme-brulee-100"
    assert slugify("---") == ""


def test_truncate_aliases():
    assert truncate("abcdef", len=3) == "abc"
    assert truncate("abcdef", n=2) == "ab"
    assert truncate("abcdef", max=4) == "abcd"
    assert truncate("abcdef") == "abcdef"


def test_replace_all_occurrences():
    assert replace("a-b-c", find="-", replace="/") == "a/b/c"
    assert replace("abc", find="") == "abc"


def test_trim_leaves_non_strings():
    assert trim("  x ") == "x"
    assert trim(5) == 5


def test_apply_transforms_in_order():
    transforms = parse_transforms(["strip_html", {"op": "truncate", "len": 5}, "slugify"])
    assert apply_transforms("<b>Hello World</b>", transforms) == "hello"
