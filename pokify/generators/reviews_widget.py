"""
Reviews Widget Generator for the Pokify import service.
Renders the public reviews iframe from a published reviews snapshot.
"""
import html
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pokify.models.entities import PublishedReviewsJson, ReviewConfig
from pokify.utils.logger import LayerLogger


REVIEWS_PER_PAGE = 4
HEIGHT_MESSAGE_TYPE = "pokify-reviews-height"
DISPLAY_FORMATS = ("default", "stars", "compact", "detailed", "minimal")

FORMAT_STYLES: Dict[str, str] = {
    "default": "",
    "stars": """
      .review-content { display: none; }
      .review-stars .star { font-size: 20px; }
    """,
    "compact": """
      .review-card { padding: 15px; font-size: 0.9em; min-height: 0; }
      .review-content { max-height: 100px; overflow: hidden; }
      .review-images { flex-wrap: wrap; }
    """,
    "detailed": """
      .review-card { padding: 25px; }
      .review-content { font-size: 16px; }
      .review-images { margin-bottom: 20px; }
      .review-image { width: 100px; height: 100px; }
    """,
    "minimal": """
      .review-card { box-shadow: none; border: 1px solid #e2e8f0; }
      .avatar { display: none; }
      .review-date { font-size: 12px; }
    """,
}

BASE_STYLE = """
  * { box-sizing: border-box; margin: 0; padding: 0; }
  body { font-family: 'Montserrat', Arial, sans-serif; background: #fff; color: #333; font-size: 14px; line-height: 1.4; }
  .reviews-container { width: 100%; max-width: 1300px; margin: 0 auto; padding: 0 20px; }
  .reviews-header { padding: 30px 0; border-bottom: 1px solid #eaeaea; margin-bottom: 25px; text-align: center; }
  .reviews-title { font-size: 28px; font-weight: 700; color: __PRIMARY__; margin-bottom: 16px; }
  .big-rating { font-size: 56px; font-weight: 700; line-height: 1; }
  .total-reviews { color: #555; margin-top: 8px; }
  .review-grid { display: grid; grid-template-columns: repeat(2, 1fr); gap: 25px; margin-bottom: 40px; }
  .review-card { border: 1px solid #f0f0f0; border-radius: 12px; padding: 24px; background: #fff; box-shadow: 0 2px 10px rgba(0,0,0,0.03); min-height: 200px; display: flex; flex-direction: column; }
  .review-card.highlighted { border-color: __PRIMARY__; }
  .review-header { display: flex; justify-content: space-between; align-items: flex-start; margin-bottom: 14px; }
  .reviewer { display: flex; align-items: center; gap: 10px; }
  .avatar { width: 40px; height: 40px; border-radius: 50%; background: __SECONDARY__; color: __PRIMARY__; display: flex; align-items: center; justify-content: center; font-weight: 600; }
  .reviewer-name { font-weight: 600; font-size: 16px; color: #222; }
  .review-date { font-size: 12px; color: #777; }
  .highlight-badge { display: inline-block; margin-top: 4px; padding: 2px 8px; border-radius: 10px; background: __PRIMARY__; color: #fff; font-size: 11px; }
  .star { font-size: 16px; color: #FFB800; }
  .star.empty { color: #e0e0e0; }
  .review-content { line-height: 1.6; margin-bottom: 18px; flex-grow: 1; }
  .review-images { display: flex; gap: 8px; }
  .review-image { width: 80px; height: 80px; object-fit: cover; border-radius: 6px; border: 1px solid #eee; }
  .pagination { display: flex; justify-content: center; gap: 15px; margin-bottom: 40px; }
  .page-btn { padding: 10px 25px; background: __PRIMARY__; color: #fff; border-radius: 6px; text-decoration: none; font-weight: 600; font-size: 13px; text-transform: uppercase; }
  .empty-card { border: 1px dashed #ddd; border-radius: 12px; padding: 40px; text-align: center; color: #777; }
  @media (max-width: 768px) { .review-grid { grid-template-columns: 1fr; } }
"""

HEIGHT_REPORTER = """
  function reportHeight() {
    var height = document.body.scrollHeight;
    window.parent.postMessage({ type: "%s", height: height }, "*");
  }
  window.addEventListener("load", reportHeight);
  window.addEventListener("resize", reportHeight);
""" % HEIGHT_MESSAGE_TYPE


def initials(author: str) -> str:
    """``"Maria da Silva"`` -> ``"MS"``"""
    parts = (author or "").split()
    if not parts:
        return "?"
    letters = parts[0][0] + (parts[-1][0] if len(parts) > 1 else "")
    return letters.upper()


def render_stars(rating: int) -> str:
    rating = max(0, min(5, int(rating or 0)))
    return "".join(
        f'<span class="star {"filled" if i <= rating else "empty"}">{"★" if i <= rating else "☆"}</span>'
        for i in range(1, 6)
    )


def format_date(value: Optional[Union[str, datetime]]) -> str:
    """Format an ISO date as ``dd/mm/YYYY``; unparseable values render empty."""
    if not value:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%d/%m/%Y")
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%d/%m/%Y")
    except ValueError:
        return ""


class ReviewsWidgetGenerator:
    """
    Server-side renderer for the reviews iframe document.

    Only user content is escaped; the document skeleton is static.
    """

    def __init__(self, per_page: int = REVIEWS_PER_PAGE):
        self.per_page = per_page
        self.logger = LayerLogger("reviews_widget")

    def render(
        self,
        snapshot_or_reviews: Union[PublishedReviewsJson, List[Dict[str, Any]], None],
        config: Optional[ReviewConfig] = None,
        page: int = 1,
    ) -> str:
        reviews, average, product_name = self._unpack(snapshot_or_reviews)

        display_format = (config.display_format if config else None) or "default"
        if display_format not in DISPLAY_FORMATS:
            self.logger.log_warning("Unknown display format, using default", display_format=display_format)
            display_format = "default"
        show_images = config.show_images if config and config.show_images is not None else True
        show_dates = config.show_dates if config and config.show_dates is not None else True
        primary = (config.primary_color if config else None) or "#000000"
        secondary = (config.secondary_color if config else None) or "#f5f5f5"

        total_pages = max(1, math.ceil(len(reviews) / self.per_page))
        page = max(1, min(int(page or 1), total_pages))
        start = (page - 1) * self.per_page
        visible = reviews[start:start + self.per_page]

        if visible:
            cards = "".join(self._render_card(r, show_images, show_dates) for r in visible)
            body = f'<div class="review-grid">{cards}</div>{self._render_pagination(page, total_pages)}'
        else:
            body = '<div class="empty-card"><p>Nenhuma avaliação ainda.</p></div>'

        style = (
            BASE_STYLE
            .replace("__PRIMARY__", html.escape(primary))
            .replace("__SECONDARY__", html.escape(secondary))
            + FORMAT_STYLES[display_format]
        )

        self.logger.log_action(
            "render_widget",
            "completed",
            reviews=len(reviews),
            page=page,
            display_format=display_format,
        )

        return (
            "<!DOCTYPE html>"
            '<html lang="pt-BR"><head>'
            '<meta charset="UTF-8">'
            '<meta name="viewport" content="width=device-width, initial-scale=1.0">'
            f"<title>Avaliações de {html.escape(product_name)}</title>"
            f"<style>{style}</style>"
            "</head><body>"
            f'<div class="reviews-container format-{display_format}">'
            '<div class="reviews-header">'
            '<h1 class="reviews-title">Avaliações de clientes</h1>'
            f'<div class="big-rating">{average:.1f}</div>'
            f'<div class="rating-stars">{render_stars(round(average))}</div>'
            f'<div class="total-reviews">{len(reviews)} avaliações</div>'
            "</div>"
            f"{body}"
            "</div>"
            f"<script>{HEIGHT_REPORTER}</script>"
            "</body></html>"
        )

    @staticmethod
    def _unpack(source) -> Tuple[List[Dict[str, Any]], float, str]:
        if source is None:
            return [], 0.0, "Produto"
        if isinstance(source, PublishedReviewsJson):
            reviews = list(source.reviews_data or [])
            return reviews, float(source.average_rating or 0.0), source.product_name or "Produto"

        reviews = list(source)
        average = round(sum(int(r.get("rating") or 0) for r in reviews) / len(reviews), 1) if reviews else 0.0
        return reviews, average, "Produto"

    def _render_card(self, review: Dict[str, Any], show_images: bool, show_dates: bool) -> str:
        author = review.get("author") or "Cliente"
        highlighted = bool(review.get("is_selected"))

        date_html = ""
        if show_dates:
            date_html = f'<div class="review-date">{html.escape(format_date(review.get("date")))}</div>'

        badge_html = '<span class="highlight-badge">Destaque</span>' if highlighted else ""

        images_html = ""
        images = [url for url in (review.get("images") or []) if url]
        if show_images and images:
            images_html = '<div class="review-images">' + "".join(
                f'<img class="review-image" src="{html.escape(url, quote=True)}" alt="Foto do review" loading="lazy">'
                for url in images
            ) + "</div>"

        return (
            f'<div class="review-card{" highlighted" if highlighted else ""}">'
            '<div class="review-header">'
            '<div class="reviewer">'
            f'<div class="avatar">{html.escape(initials(author))}</div>'
            "<div>"
            f'<div class="reviewer-name">{html.escape(author)}</div>'
            f"{date_html}{badge_html}"
            "</div></div>"
            f'<div class="review-stars">{render_stars(review.get("rating") or 0)}</div>'
            "</div>"
            f'<div class="review-content"><p>{html.escape(review.get("content") or "")}</p></div>'
            f"{images_html}"
            "</div>"
        )

    @staticmethod
    def _render_pagination(page: int, total_pages: int) -> str:
        if total_pages <= 1:
            return ""
        links = []
        if page > 1:
            links.append(f'<a class="page-btn prev" href="?page={page - 1}">Anterior</a>')
        if page < total_pages:
            links.append(f'<a class="page-btn next" href="?page={page + 1}">Próximo</a>')
        return '<div class="pagination">' + "".join(links) + "</div>"
