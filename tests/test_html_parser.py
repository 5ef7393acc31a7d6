from retold.html_parser import extract_paragraph_blocks, extract_paragraphs, paragraphs_to_html


def test_extract_paragraphs_strips_tags_and_decodes_entities():
    html = """
    <html><body>
      <h1>Letter 1</h1>
      <p>Hello <em>world</em>.</p>
      <p>Bread &amp; butter,&nbsp;please &lt;now&gt;.</p>
      <p>   </p>
      <p class="x">Last
         line</p>
    </body></html>
    """
    paras = extract_paragraphs(html)
    assert paras == ["Hello world.", "Bread & butter, please <now>.", "Last line"]


def test_extract_paragraphs_empty_markup():
    assert extract_paragraphs("") == []
    assert extract_paragraphs("<div>No paragraphs here</div>") == []


def test_paragraphs_to_html_escapes_and_skips_blank():
    html = paragraphs_to_html(["One & two.", "  ", "a < b"])
    assert html == "<p>One &amp; two.</p>\n<p>a &lt; b</p>"
    assert extract_paragraphs(html) == ["One & two.", "a < b"]


def test_extract_paragraph_blocks_keeps_outer_markup():
    html = '<p class="lead">Hello <em>world</em>.</p><p> </p><p>Bye.</p>'
    blocks = extract_paragraph_blocks(html)
    assert blocks == [
        {"html": '<p class="lead">Hello <em>world</em>.</p>', "text": "Hello world."},
        {"html": "<p>Bye.</p>", "text": "Bye."},
    ]
