import web_zipper as wz

PAGE = "https://ex.com/"


def test_duplicate_images_share_one_entry(localizer_factory):
    localizer, archive, _, fetcher = localizer_factory(
        {"https://ex.com/a.png": b"PNG"}
    )
    html = '<html><body><img src="/a.png"><img src="/a.png"></body></html>'
    out = localizer.localize(html, PAGE)
    assert out.count('src="../img/a.png"') == 2
    assert archive.paths() == ["img/a.png"]
    assert archive.get("img/a.png") == b"PNG"
    assert fetcher.count("https://ex.com/a.png") == 1


def test_inline_and_missing_sources_are_left_alone(localizer_factory):
    localizer, archive, _, fetcher = localizer_factory()
    html = '<img src="data:image/png;base64,AAAA"><img alt="no source">'
    out = localizer.localize(html, PAGE)
    assert 'src="data:image/png;base64,AAAA"' in out
    assert archive.paths() == []
    assert fetcher.calls == []


def test_pdf_links_are_localized(localizer_factory):
    localizer, archive, _, _ = localizer_factory(
        {"https://ex.com/docs/manual.pdf": b"%PDF"}
    )
    html = '<a href="/docs/manual.pdf">manual</a> <a href="/about">about</a>'
    out = localizer.localize(html, PAGE)
    assert 'href="../pdf/manual.pdf"' in out
    assert 'href="/about"' in out
    assert archive.get("pdf/manual.pdf") == b"%PDF"


def test_stylesheet_is_fetched_rewritten_and_stored(localizer_factory):
    localizer, archive, _, _ = localizer_factory(
        {
            "https://ex.com/static/site.css": "body{background:url(bg.png)}",
            "https://ex.com/static/bg.png": b"BG",
        }
    )
    html = (
        '<head><link rel="stylesheet" href="/static/site.css" '
        'integrity="sha384-abc" crossorigin="anonymous"></head>'
    )
    out = localizer.localize(html, PAGE)
    assert 'href="../css/ex.com_static_site.css"' in out
    assert "integrity" not in out
    assert "crossorigin" not in out
    css = archive.get("css/ex.com_static_site.css").decode("utf-8")
    assert css == "body{background:url(../img/bg.png)}"
    assert archive.get("img/bg.png") == b"BG"


def test_failed_stylesheet_leaves_rewritten_tag_without_file(localizer_factory):
    localizer, archive, _, _ = localizer_factory()
    html = '<link rel="stylesheet" href="/static/site.css">'
    out = localizer.localize(html, PAGE)
    assert 'href="../css/ex.com_static_site.css"' in out
    assert "css/ex.com_static_site.css" not in archive


def test_extension_origin_stylesheet_is_fetched_from_page_origin(localizer_factory):
    localizer, archive, _, fetcher = localizer_factory(
        {"https://ex.com/css/x.css": "p{}"}
    )
    html = '<link rel="stylesheet" href="chrome-extension://abcdef/css/x.css">'
    localizer.localize(html, "https://ex.com/blog/post")
    assert fetcher.count("https://ex.com/css/x.css", kind="text") == 1
    assert archive.get("css/ex.com_css_x.css") == b"p{}"


def test_scripts_are_localized(localizer_factory):
    localizer, archive, _, _ = localizer_factory(
        {"https://cdn.ex.com/lib/app.js": "console.log(1)"}
    )
    html = (
        '<script src="https://cdn.ex.com/lib/app.js"></script>'
        "<script>var x;</script>"
    )
    out = localizer.localize(html, PAGE)
    assert 'src="../js/cdn.ex.com_lib_app.js"' in out
    assert "<script>var x;</script>" in out
    assert archive.get("js/cdn.ex.com_lib_app.js") == b"console.log(1)"


def test_video_frames_are_localized(localizer_factory):
    localizer, archive, _, _ = localizer_factory(
        {"https://www.youtube.com/embed/abc123": b"<html>player</html>"}
    )
    html = '<iframe src="//www.youtube.com/embed/abc123"></iframe>'
    out = localizer.localize(html, PAGE)
    assert 'src="../video/abc123"' in out
    assert archive.get("video/abc123") == b"<html>player</html>"


def test_every_phase_keeps_the_previous_phases_edits(localizer_factory):
    localizer, archive, _, _ = localizer_factory(
        {
            "https://ex.com/a.pdf": b"%PDF",
            "https://ex.com/i.png": b"PNG",
            "https://ex.com/s.css": "p{}",
            "https://ex.com/app.js": "1",
            "https://ex.com/embed/v1": b"V",
        }
    )
    html = """<html><head>
    <link rel="stylesheet" href="s.css"><script src="app.js"></script>
    </head><body>
    <a href="a.pdf">pdf</a><img src="i.png"><iframe src="/embed/v1"></iframe>
    </body></html>"""
    out = localizer.localize(html, PAGE)
    for ref in (
        'href="../pdf/a.pdf"',
        'src="../img/i.png"',
        'href="../css/ex.com_s.css"',
        'src="../js/ex.com_app.js"',
        'src="../video/v1"',
    ):
        assert ref in out
    assert sorted(archive.paths()) == [
        "css/ex.com_s.css",
        "img/i.png",
        "js/ex.com_app.js",
        "pdf/a.pdf",
        "video/v1",
    ]


def test_bad_element_does_not_stop_its_siblings(localizer_factory):
    localizer, archive, _, _ = localizer_factory({"https://ex.com/b.png": b"B"})
    html = '<img src="mailto:nobody@ex.com"><img src="/b.png">'
    out = localizer.localize(html, PAGE)
    assert 'src="mailto:nobody@ex.com"' in out
    assert 'src="../img/b.png"' in out
    assert archive.paths() == ["img/b.png"]


def test_base_href_is_honoured(localizer_factory):
    localizer, _, _, fetcher = localizer_factory({"https://static.ex.com/i.png": b"I"})
    html = '<head><base href="https://static.ex.com/"></head><img src="i.png">'
    localizer.localize(html, "https://ex.com/a/b.html")
    assert fetcher.count("https://static.ex.com/i.png") == 1


def test_element_callback_matches_estimate(localizer_factory):
    localizer, _, _, _ = localizer_factory()
    html = """
    <link rel="stylesheet" href="s.css"><link rel="icon" href="f.ico">
    <script src="a.js"></script><script>inline()</script>
    <a href="x.pdf">x</a><a href="/about">about</a>
    <img src="a.png"><img src="b.png"><img>
    <iframe src="/embed/1"></iframe><iframe></iframe>
    """
    ticks = []
    localizer.localize(html, PAGE, on_element=lambda: ticks.append(1))
    expected = wz.estimate_resources(html, PAGE, wz.DEFAULT_INTERNAL_ORIGINS)
    assert expected == 7
    assert len(ticks) == expected


def test_remote_base_is_removed_from_the_stored_page(localizer_factory):
    localizer, _, _, _ = localizer_factory({"https://cdn.ex.com/assets/i.png": b"I"})
    html = (
        '<head><base href="https://cdn.ex.com/assets/"></head>'
        '<body><img src="i.png"></body>'
    )
    out = localizer.localize(html, PAGE)
    assert "<base" not in out
    assert "cdn.ex.com" not in out
    assert 'src="../img/i.png"' in out


def test_base_target_survives_without_href(localizer_factory):
    localizer, _, _, _ = localizer_factory()
    html = '<head><base href="https://cdn.ex.com/" target="_blank"></head>'
    out = localizer.localize(html, PAGE)
    assert "cdn.ex.com" not in out
    assert 'target="_blank"' in out


def test_srcset_is_dropped_from_localized_images(localizer_factory):
    localizer, archive, _, fetcher = localizer_factory({"https://ex.com/a.png": b"A"})
    html = (
        "<picture>"
        '<source srcset="https://cdn.ex.com/a.webp" type="image/webp">'
        '<img src="/a.png" srcset="/a@2x.png 2x, /a@3x.png 3x" sizes="50vw">'
        "</picture>"
    )
    out = localizer.localize(html, PAGE)
    assert 'src="../img/a.png"' in out
    assert "srcset" not in out
    assert "sizes" not in out
    assert archive.paths() == ["img/a.png"]
    assert fetcher.count("https://cdn.ex.com/a.webp") == 0


def test_srcset_kept_when_src_is_inline(localizer_factory):
    localizer, _, _, _ = localizer_factory()
    html = '<img src="data:image/gif;base64,R0lG" srcset="/a.png 1x">'
    out = localizer.localize(html, PAGE)
    assert 'srcset="/a.png 1x"' in out
