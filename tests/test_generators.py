"""
Unit tests for the reviews iframe renderer and the storefront inject script.
"""
from pokify.generators.inject_script import InjectScriptGenerator, js_string_escape, normalize_position
from pokify.generators.reviews_widget import (
    HEIGHT_MESSAGE_TYPE,
    ReviewsWidgetGenerator,
    format_date,
    initials,
    render_stars,
)
from pokify.models.entities import PublishedReviewsJson, ReviewConfig


def make_reviews(count: int):
    return [
        {
            "id": f"r{i}",
            "author": f"Cliente {i}",
            "rating": 5 if i % 2 else 4,
            "content": f"Comentário {i}",
            "date": "2024-01-05T10:00:00",
            "images": [],
            "is_selected": True,
        }
        for i in range(1, count + 1)
    ]


def card_count(document: str) -> int:
    return document.count('class="review-card')


class TestHelpers:

    def test_initials(self):
        assert initials("Maria da Silva") == "MS"
        assert initials("ana") == "A"
        assert initials("   ") == "?"

    def test_render_stars(self):
        stars = render_stars(4)
        assert stars.count("star filled") == 4
        assert stars.count("star empty") == 1
        assert render_stars(9).count("star filled") == 5

    def test_format_date(self):
        assert format_date("2024-01-05T10:00:00") == "05/01/2024"
        assert format_date("2024-01-05T10:00:00Z") == "05/01/2024"
        assert format_date("ontem") == ""
        assert format_date(None) == ""


class TestReviewsWidget:

    def test_pagination_four_per_page(self):
        generator = ReviewsWidgetGenerator()
        reviews = make_reviews(9)

        first = generator.render(reviews, page=1)
        second = generator.render(reviews, page=2)
        last = generator.render(reviews, page=99)

        assert card_count(first) == 4
        assert 'href="?page=2"' in first and "Anterior" not in first

        assert card_count(second) == 4
        assert "Cliente 5" in second and "Cliente 9" not in second
        assert 'href="?page=1"' in second and 'href="?page=3"' in second

        assert card_count(last) == 1
        assert "Cliente 9" in last
        assert "Próximo" not in last

    def test_single_page_has_no_pagination(self):
        document = ReviewsWidgetGenerator().render(make_reviews(3))
        assert 'class="pagination"' not in document

    def test_user_content_escaped(self):
        reviews = [{
            "author": "<script>alert(1)</script>",
            "rating": 5,
            "content": '<img src=x onerror="steal()">',
            "images": ['https://cdn/a.jpg" onload="x'],
        }]

        document = ReviewsWidgetGenerator().render(reviews)

        assert "<script>alert" not in document
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in document
        assert "<img src=x" not in document
        assert 'a.jpg&quot; onload=&quot;x' in document

    def test_empty_state(self):
        document = ReviewsWidgetGenerator().render(None)

        assert "Nenhuma avaliação ainda." in document
        assert "0.0" in document
        assert "0 avaliações" in document

    def test_snapshot_header(self):
        snapshot = PublishedReviewsJson(
            product_name="Body <Premium>",
            average_rating=4.3,
            total_reviews=2,
            reviews_data=make_reviews(2),
        )

        document = ReviewsWidgetGenerator().render(snapshot)

        assert "<title>Avaliações de Body &lt;Premium&gt;</title>" in document
        assert '<div class="big-rating">4.3</div>' in document
        assert "2 avaliações" in document
        assert "Destaque" in document

    def test_height_reporter(self):
        document = ReviewsWidgetGenerator().render(make_reviews(1))

        assert "window.parent.postMessage" in document
        assert HEIGHT_MESSAGE_TYPE in document

    def test_config_applied(self):
        config = ReviewConfig(
            display_format="compact",
            primary_color="#ff0000",
            secondary_color="#00ff00",
            show_images=False,
            show_dates=False,
        )
        reviews = make_reviews(1)
        reviews[0]["images"] = ["https://cdn/photo.jpg"]

        document = ReviewsWidgetGenerator().render(reviews, config)

        assert "format-compact" in document
        assert "color: #ff0000" in document
        assert "background: #00ff00" in document
        assert 'class="review-image"' not in document
        assert 'class="review-date"' not in document

    def test_unknown_format_falls_back(self):
        document = ReviewsWidgetGenerator().render(make_reviews(1), ReviewConfig(display_format="neon"))

        assert "format-default" in document
        assert 'class="review-date">05/01/2024' in document


class TestInjectScript:

    def test_escape(self):
        assert js_string_escape('a"b') == 'a\\"b'
        assert js_string_escape("</script>") == "<\\/script>"

    def test_positions(self):
        assert normalize_position("antes_comprar") == "before_buy"
        assert normalize_position("final_pagina") == "end"
        assert normalize_position("end") == "end"
        assert normalize_position("sidebar") == "after"
        assert normalize_position(None) == "after"

    def test_render(self):
        script = InjectScriptGenerator().render(
            "https://api.pokify.test/",
            "loja.myshopify.com",
            "user-1",
            position="apos_descricao",
            custom_selector='div[data-x="1"]',
        )

        assert 'apiUrl: "https://api.pokify.test"' in script
        assert 'shopDomain: "loja.myshopify.com"' in script
        assert 'userId: "user-1"' in script
        assert 'position: "after"' in script
        assert 'customSelector: "div[data-x=\\"1\\"]"' in script
        assert "{{" not in script

    def test_render_defaults_and_injection(self):
        script = InjectScriptGenerator().render("https://api.pokify.test", "", "</script><script>x()")

        assert 'shopDomain: "default"' in script
        assert 'userId: "<\\/script><script>x()"' in script
        assert 'customSelector: ""' in script

    def test_render_without_shop_or_user(self):
        script = InjectScriptGenerator().render("https://api.pokify.test", shop_domain=None, user_id=None)

        assert 'shopDomain: "default"' in script
        assert 'userId: "anonymous"' in script
        assert 'position: "after"' in script
