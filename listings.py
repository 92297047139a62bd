"""Listing queries: filters, sorting, pagination and favorite flags.

Every listing endpoint goes through :func:`listing_query` so the visibility
rules (no soft-deleted rows, status scope) live in one place.
"""
import logging
import math

from sqlalchemy.orm import selectinload

import config
from errors import APIError
from extensions import db
from models import CategoryProduct, Favourite, ListingStatus, Location, Product

logger = logging.getLogger(__name__)

SEARCH_MAX_LENGTH = 100
MAX_OFFSET = 2 ** 63 - 1

SORT_FIELDS = {
    'created_at': Product.created_at,
    'price': Product.price,
    'title': Product.title,
}
SORT_DIRECTIONS = ('asc', 'desc')
DEFAULT_SORT = ('created_at', 'desc')


def _positive_int(raw, default):
    if raw is None or str(raw).strip() == '':
        return default
    try:
        value = int(float(str(raw).strip()))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(1, value)


def parse_page_args(args):
    """Return ``(page, limit)`` from query args, both >= 1.

    ``page`` is capped so the row offset still fits a 64-bit integer.
    """
    limit = min(_positive_int(args.get('limit'), config.DEFAULT_PAGE_LIMIT), config.MAX_PAGE_LIMIT)
    page = min(_positive_int(args.get('page'), 1), MAX_OFFSET // limit)
    return page, limit


def clean_text_filter(raw):
    """Trim and cap a free-text filter; blank input means no filter."""
    if raw is None:
        return None
    term = str(raw).strip()[:SEARCH_MAX_LENGTH]
    return term or None


def _price(raw):
    if raw is None or str(raw).strip() == '':
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise APIError('Invalid price values', 400)
    if not math.isfinite(value):
        raise APIError('Invalid price values', 400)
    return value


def parse_price_bounds(args):
    """Return ``(min_price, max_price)``, either may be None.

    Raises APIError 400 for non-numeric, non-finite or negative bounds and 422
    when the minimum exceeds the maximum.
    """
    min_price = _price(args.get('minPrice'))
    max_price = _price(args.get('maxPrice'))

    if (min_price is not None and min_price < 0) or (max_price is not None and max_price < 0):
        raise APIError('Prices must be non-negative', 400)
    if min_price is not None and max_price is not None and min_price > max_price:
        raise APIError('Max price must be higher than min price', 422)
    return min_price, max_price


def parse_sort(args):
    """Return ``(field, direction)``.

    Reads ``sort=field:direction`` or, when that is absent, ``sortBy``/``sortDir``.
    Each half that is outside its allow-list falls back to the default
    independently; nothing here raises.
    """
    field, direction = DEFAULT_SORT
    sort = args.get('sort')

    if isinstance(sort, str) and sort:
        raw_field, _, raw_direction = sort.partition(':')
    else:
        raw_field, raw_direction = args.get('sortBy'), args.get('sortDir')

    if raw_field in SORT_FIELDS:
        field = raw_field
    if raw_direction and str(raw_direction).lower() in SORT_DIRECTIONS:
        direction = str(raw_direction).lower()
    return field, direction


def parse_category_filter(args):
    raw = args.get('categoryId')
    if raw is None or str(raw).strip() == '':
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        raise APIError('Invalid categoryId', 400)


def listing_query(status=ListingStatus.ACTIVE, user_id=None, category_id=None,
                  search=None, min_price=None, max_price=None, city=None, sort=DEFAULT_SORT):
    """Build the query for visible products matching the given scope and filters.

    ``status=None`` means any status. Soft-deleted products are always excluded.
    """
    query = Product.query.filter(Product.deleted_at.is_(None))

    if status is not None:
        query = query.filter(Product.status_id == int(status))
    if user_id is not None:
        query = query.filter(Product.user_id == user_id)
    if category_id is not None:
        # A product matches when at least one of its categories is the target.
        query = query.filter(Product.categories.any(CategoryProduct.category_id == category_id))
    if search:
        # % and _ in user text match literally
        query = query.filter(db.or_(
            Product.title.icontains(search, autoescape=True),
            Product.description.icontains(search, autoescape=True),
        ))
    if min_price is not None:
        query = query.filter(Product.price >= min_price)
    if max_price is not None:
        query = query.filter(Product.price <= max_price)
    if city:
        query = query.filter(Product.location.has(Location.city.icontains(city, autoescape=True)))

    field, direction = sort
    column = SORT_FIELDS[field]
    order = column.asc() if direction == 'asc' else column.desc()
    return query.order_by(order, Product.id.desc())


def with_relations(query):
    return query.options(
        selectinload(Product.categories).selectinload(CategoryProduct.category),
        selectinload(Product.images),
        selectinload(Product.status),
        selectinload(Product.location),
        selectinload(Product.owner),
    )


def paginate(query, page, limit):
    """Return ``(items, pagination)`` for one page of ``query``."""
    result = with_relations(query).paginate(page=page, per_page=limit, error_out=False, count=True)
    total = result.total or 0
    pagination = {
        'page': page,
        'limit': limit,
        'total': total,
        'pages': math.ceil(total / limit),
    }
    return result.items, pagination


def add_favorite_status(products, viewer_id=None):
    """Serialize ``products`` with an ``isFavorite`` flag for ``viewer_id``.

    Without a viewer every flag is False and the database is not touched. With
    a viewer the favourites for the whole page are fetched in one query.
    """
    if not viewer_id:
        return [dict(product.to_dict(), isFavorite=False) for product in products]

    product_ids = [product.id for product in products]
    favourite_ids = set()
    if product_ids:
        rows = db.session.query(Favourite.product_id).filter(
            Favourite.user_id == viewer_id,
            Favourite.product_id.in_(product_ids),
        ).all()
        favourite_ids = {row.product_id for row in rows}

    return [dict(product.to_dict(), isFavorite=product.id in favourite_ids) for product in products]


def search_listings(args, viewer_id=None):
    """Run the search/filter listing for request ``args``.

    Returns ``(products, pagination)`` with products already serialized.
    """
    page, limit = parse_page_args(args)
    min_price, max_price = parse_price_bounds(args)
    query = listing_query(
        status=ListingStatus.ACTIVE,
        category_id=parse_category_filter(args),
        search=clean_text_filter(args.get('q')),
        min_price=min_price,
        max_price=max_price,
        city=clean_text_filter(args.get('location')),
        sort=parse_sort(args),
    )
    items, pagination = paginate(query, page, limit)
    logger.debug("search page=%s limit=%s total=%s", page, limit, pagination['total'])
    return add_favorite_status(items, viewer_id), pagination
