import logging
import math

from errors import APIError
from extensions import db
from models import Category, CategoryProduct, ListingStatus, Location, utcnow

logger = logging.getLogger(__name__)


def parse_category_ids(raw):
    """Turn CSV text, a list of CSV text, or a list of ints into unique ids.

    Order of first appearance is kept and tokens that are not integers are
    dropped, so ``"1,2,2,3"`` gives ``[1, 2, 3]``.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        csv = ','.join(str(item) for item in raw)
    else:
        csv = str(raw)

    ids = []
    for token in csv.split(','):
        token = token.strip()
        try:
            value = int(token)
        except ValueError:
            continue
        if value not in ids:
            ids.append(value)
    return ids


def load_categories(category_ids):
    """Return Category rows for ``category_ids``; 400 if any id is unknown."""
    if not category_ids:
        return []
    found = Category.query.filter(Category.id.in_(category_ids)).all()
    missing = set(category_ids) - {category.id for category in found}
    if missing:
        raise APIError(f"Unknown category id(s): {', '.join(str(i) for i in sorted(missing))}", 400)
    return found


def set_product_categories(product, category_ids):
    """Replace the product's category associations with ``category_ids``."""
    categories = load_categories(category_ids)
    product.categories.clear()
    db.session.flush()
    for category in categories:
        product.categories.append(CategoryProduct(category_id=category.id))


def find_or_create_location(city, country=None):
    """Return the Location for an exact (city, country) match, creating it if absent.

    Blank country is stored as NULL. City and country are compared as given:
    case and surrounding whitespace are not normalized.
    """
    country = country or None
    location = Location.query.filter_by(city=city, country=country).first()
    if location is None:
        location = Location(city=city, country=country)
        db.session.add(location)
        db.session.flush()
        logger.info("Created location %r, %r (id=%s)", city, country, location.id)
    return location


def parse_price(raw):
    try:
        price = float(str(raw).strip())
    except (TypeError, ValueError):
        raise APIError('Invalid price', 400)
    if not math.isfinite(price) or price < 0:
        raise APIError('Invalid price', 400)
    return price


def parse_status(raw):
    """Validate a status id from the request into a ListingStatus."""
    status = ListingStatus.parse(raw)
    if status is None:
        raise APIError('Invalid statusId', 400)
    return status


def set_status(product, status):
    # active <-> sold; no history is kept
    product.status_id = int(status)


def soft_delete_product(product):
    """Hide a product: drop its category links and stamp ``deleted_at``."""
    product.categories.clear()
    product.deleted_at = utcnow()
    db.session.flush()
    logger.info("Soft-deleted product id=%s", product.id)
    return product
