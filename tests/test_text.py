from medchat.core.text import generate_excerpt, truncate


def test_excerpt_strips_markdown():
    md = "# Asthma\n\n**Asthma** is a *chronic* condition. See [the guide](/guide) and `inhalers`.\n\n- item one\n> quoted"
    assert generate_excerpt(md) == "Asthma Asthma is a chronic condition. See the guide and inhalers. item one quoted"


def test_excerpt_keeps_image_alt_text():
    assert generate_excerpt("![lungs diagram](/img/lungs.png)") == "lungs diagram"


def test_excerpt_truncates_with_ellipsis():
    assert generate_excerpt("word " * 100, max_length=20) == "word word word word..."


def test_excerpt_of_nothing():
    assert generate_excerpt(None) == ""
    assert generate_excerpt("") == ""


def test_truncate():
    assert truncate(None, 5) is None
    assert truncate("short", 5) == "short"
    assert truncate("longer", 3) == "lon..."
