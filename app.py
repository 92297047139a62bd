import logging
import re

from flask import Flask, request, jsonify, abort
from flask_login import current_user, login_required
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

# Import configurations and extensions
import config
from extensions import db, login_manager, oauth, cors
from errors import APIError, NotFound, Conflict
from models import (
    User, Product, ProductStatus, Category, CategoryProduct, Image, Favourite, ListingStatus
)
from auth import (
    verify_google_id_token, find_or_create_google_user, issue_session_token,
    set_session_cookie, clear_session_cookie, viewer_id, require_self
)
from catalog import (
    parse_category_ids, set_product_categories, find_or_create_location,
    parse_price, parse_status, set_status, soft_delete_product
)
from listings import (
    listing_query, paginate, parse_page_args, add_favorite_status, search_listings, with_relations
)
from uploads import validate_images, save_file, remove_file, serve_upload

config.setup_logging()
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config['SECRET_KEY'] = config.SECRET_KEY
app.config['SQLALCHEMY_DATABASE_URI'] = config.DATABASE_URL
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
# Our token owns the "session" cookie name; move Flask's own cookie aside
app.config['SESSION_COOKIE_NAME'] = 'flask_session'
app.config['MAX_CONTENT_LENGTH'] = config.MAX_IMAGE_SIZE * config.MAX_IMAGES_PER_REQUEST + 1024 * 1024

# Initialize extensions
db.init_app(app)
login_manager.init_app(app)
oauth.init_app(app)
cors.init_app(app, resources={r"/api/*": {"origins": config.CORS_ORIGINS}}, supports_credentials=True)

DEFAULT_CATEGORIES = ['electronics', 'computers']

EMAIL_REGEX = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


# Helper functions
def request_data():
    """Form fields for multipart/urlencoded requests, otherwise the JSON body."""
    if request.form or request.files:
        data = request.form.to_dict()
        category_ids = request.form.getlist('categoryIds')
        if category_ids:
            data['categoryIds'] = category_ids
        return data
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def get_visible_product(product_id):
    product = Product.query.filter_by(id=product_id, deleted_at=None).first()
    if product is None:
        raise NotFound('Product not found')
    return product


def get_owned_product(product_id):
    product = get_visible_product(product_id)
    if product.user_id != current_user.id:
        abort(403)
    return product


def get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    return user


def get_category_or_404(category_id):
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFound('Category not found')
    return category


def attach_images(product, files):
    """Store uploads and link them; the first image of a product is primary."""
    stored = []
    has_primary = any(image.is_primary for image in product.images)
    for file in files:
        url = save_file(file)
        stored.append(url)
        product.images.append(Image(url=url, is_primary=not has_primary))
        has_primary = True
    return stored


def commit_or_cleanup(stored):
    try:
        db.session.commit()
    except Exception:
        for url in stored:
            remove_file(url)
        raise


def listing_response(query):
    page, limit = parse_page_args(request.args)
    items, pagination = paginate(query, page, limit)
    return jsonify({
        'products': add_favorite_status(items, viewer_id()),
        'pagination': pagination,
    })


def _check_length(errors, data, field, low, high, message):
    value = data.get(field)
    if not isinstance(value, str) or not (low <= len(value) <= high):
        errors.append({'field': field, 'message': message})


def validate_user_create(data):
    errors = []
    _check_length(errors, data, 'username', 3, 100, 'username must be within 3 to 100 characters long')
    if not isinstance(data.get('email'), str) or not EMAIL_REGEX.fullmatch(data['email']):
        errors.append({'field': 'email', 'message': 'email must be a valid email address'})
    password = data.get('password')
    if not isinstance(password, str) or len(password) < 6:
        errors.append({'field': 'password', 'message': 'password must be 6 characters long'})
    return errors


def validate_user_update(data):
    errors = []
    if 'username' in data:
        _check_length(errors, data, 'username', 3, 30, 'Username must be 3-30 characters long')
    if 'email' in data and (not isinstance(data['email'], str) or not EMAIL_REGEX.fullmatch(data['email'])):
        errors.append({'field': 'email', 'message': 'Invalid email address'})
    if 'phone_number' in data:
        _check_length(errors, data, 'phone_number', 3, 20, 'Phone number must be 3-20 characters long')
    if 'profile_picture_path' in data and not isinstance(data['profile_picture_path'], str):
        errors.append({'field': 'profile_picture_path', 'message': 'profile_picture_path must be a string'})
    return errors


def email_taken(email, exclude_id=None):
    query = User.query.filter(User.email == email)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def seed_core():
    """Make sure the status rows and starter categories exist."""
    for status in ListingStatus:
        if db.session.get(ProductStatus, int(status)) is None:
            db.session.add(ProductStatus(id=int(status), name=status.name.lower()))
    for name in DEFAULT_CATEGORIES:
        if not Category.query.filter_by(name=name).first():
            db.session.add(Category(name=name))
    db.session.commit()


# Routes
@app.route('/health')
def health():
    return jsonify({'ok': True})


@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return serve_upload(filename)


# Auth routes
@app.route('/api/auth/google/callback', methods=['POST'])
def google_callback():
    data = request_data()
    id_token = data.get('code') or data.get('credential')
    if not id_token:
        raise APIError('ID token required', 400)

    try:
        claims = verify_google_id_token(id_token)
    except Exception as e:
        logger.warning("Google login failed: %s", e)
        raise APIError('Authentication failed', 401)

    user = find_or_create_google_user(claims)
    response = jsonify({'user': user.to_dict()})
    return set_session_cookie(response, issue_session_token(user))


@app.route('/api/auth/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict(private=True)})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    return clear_session_cookie(jsonify({'message': 'Logged out'}))


# User routes
@app.route('/api/users')
def get_all_users():
    users = User.query.order_by(User.id).all()
    return jsonify([user.to_dict(private=True) for user in users])


@app.route('/api/users/<int:user_id>')
def get_user(user_id):
    return jsonify(get_user_or_404(user_id).to_dict(private=True))


@app.route('/api/users', methods=['POST'])
def create_user():
    data = request_data()
    errors = validate_user_create(data)
    if errors:
        raise APIError('Validation failed', 400, errors=errors)
    if email_taken(data['email']):
        raise Conflict('Email already in use')

    user = User(
        username=data['username'],
        email=data['email'],
        password_hash=generate_password_hash(data['password']),
        phone_number=data.get('phone_number'),
        profile_picture_path=data.get('profile_picture_path'),
    )
    db.session.add(user)
    db.session.commit()
    return jsonify({
        'id': user.id,
        'username': user.username,
        'email': user.email,
        'created_at': user.to_dict()['created_at'],
    }), 201


@app.route('/api/users/<int:user_id>', methods=['PUT'])
@login_required
def update_user(user_id):
    user = get_user_or_404(user_id)
    require_self(user.id)

    data = request_data()
    errors = validate_user_update(data)
    if errors:
        raise APIError('Validation failed', 400, errors=errors)
    if 'email' in data and email_taken(data['email'], exclude_id=user.id):
        raise Conflict('Email already in use')

    for field in ('username', 'email', 'phone_number', 'profile_picture_path', 'first_name', 'last_name'):
        if field in data:
            setattr(user, field, data[field])
    db.session.commit()
    return jsonify(user.to_dict(private=True))


@app.route('/api/users/<int:user_id>', methods=['DELETE'])
@login_required
def delete_user(user_id):
    user = get_user_or_404(user_id)
    require_self(user.id)

    deleted = {'id': user.id, 'username': user.username, 'email': user.email}
    db.session.delete(user)
    db.session.commit()
    logger.info("Deleted user id=%s", deleted['id'])

    response = jsonify({'message': 'User deleted successfully', 'user': deleted})
    return clear_session_cookie(response)


# Favourite routes
@app.route('/api/users/<int:user_id>/favorites/<int:product_id>', methods=['POST'])
@login_required
def add_favourite(user_id, product_id):
    require_self(user_id)
    product = get_visible_product(product_id)

    if Favourite.query.filter_by(user_id=user_id, product_id=product.id).first():
        raise Conflict('Product already in favourites')

    favourite = Favourite(user_id=user_id, product_id=product.id)
    db.session.add(favourite)
    try:
        db.session.commit()
    except IntegrityError:
        # lost a race against an identical request
        db.session.rollback()
        raise Conflict('Product already in favourites')

    return jsonify(dict(
        favourite.to_dict(),
        user={'id': current_user.id, 'username': current_user.username},
        product={'id': product.id, 'title': product.title},
    )), 201


@app.route('/api/users/<int:user_id>/favorites')
def get_favourites(user_id):
    favourites = Favourite.query.join(Product).filter(
        Favourite.user_id == user_id,
        Product.deleted_at.is_(None),
        Product.status_id == int(ListingStatus.ACTIVE),
    ).order_by(Favourite.created_at.desc(), Favourite.id.desc()).all()
    return jsonify([
        dict(favourite.to_dict(), product=favourite.product.to_dict())
        for favourite in favourites
    ])


@app.route('/api/users/<int:user_id>/favorites/<int:product_id>', methods=['DELETE'])
@login_required
def remove_favourite(user_id, product_id):
    require_self(user_id)
    favourite = Favourite.query.filter_by(user_id=user_id, product_id=product_id).first()
    if favourite is None:
        raise APIError('favourite product doesnt exist', 400)

    deleted = favourite.to_dict()
    db.session.delete(favourite)
    db.session.commit()
    return jsonify(deleted)


# Product routes
@app.route('/api/products')
def get_all_products():
    return listing_response(listing_query(status=ListingStatus.ACTIVE))


@app.route('/api/products/search-filter')
def search_and_filter_products():
    try:
        products, pagination = search_listings(request.args, viewer_id())
    except APIError:
        raise
    except Exception:
        logger.exception("Search and filter error")
        db.session.rollback()
        return jsonify({'error': 'Search failed'}), 500
    return jsonify({'products': products, 'pagination': pagination})


@app.route('/api/products/myproducts/<int:user_id>')
def get_user_products(user_id):
    return listing_response(listing_query(status=ListingStatus.ACTIVE, user_id=user_id))


@app.route('/api/products/<int:user_id>/sold')
def get_users_sold_products(user_id):
    return listing_response(listing_query(status=ListingStatus.SOLD, user_id=user_id))


@app.route('/api/products/category/<int:category_id>')
def get_products_by_category(category_id):
    return listing_response(listing_query(status=ListingStatus.ACTIVE, category_id=category_id))


@app.route('/api/products/category/<int:category_id>/count')
def product_count_by_category(category_id):
    count = listing_query(status=ListingStatus.ACTIVE, category_id=category_id).order_by(None).count()
    return jsonify({'count': count})


@app.route('/api/products/user/<int:user_id>/count')
def product_count_by_user(user_id):
    count = listing_query(status=None, user_id=user_id).order_by(None).count()
    return jsonify({'count': count})


@app.route('/api/products/<int:product_id>')
def get_product(product_id):
    product = with_relations(Product.query).filter_by(id=product_id, deleted_at=None).first()
    if product is None:
        raise NotFound('Product not found')
    [decorated] = add_favorite_status([product], viewer_id())
    return jsonify({'product': decorated})


@app.route('/api/products', methods=['POST'])
@login_required
def create_product():
    data = request_data()
    title = data.get('title')
    description = data.get('description')
    location_city = data.get('location_city')
    category_ids = parse_category_ids(data.get('categoryIds'))

    if not title or not description or not data.get('statusId') or not category_ids \
            or not location_city or data.get('price') in (None, ''):
        raise APIError('Missing required fields.', 400)

    price = parse_price(data['price'])
    status = parse_status(data['statusId'])
    files = validate_images(request.files.getlist('images'))

    product = Product(
        title=title,
        description=description,
        price=price,
        user_id=current_user.id,
        status_id=int(status),
    )
    db.session.add(product)
    product.location = find_or_create_location(location_city, data.get('location_country'))
    set_product_categories(product, category_ids)

    stored = attach_images(product, files)
    commit_or_cleanup(stored)
    logger.info("Created product id=%s for user id=%s", product.id, current_user.id)
    return jsonify(product.to_dict()), 201


@app.route('/api/products/<int:product_id>', methods=['PUT'])
@login_required
def update_product(product_id):
    product = get_owned_product(product_id)
    data = request_data()

    if 'title' in data:
        product.title = data['title']
    if 'description' in data:
        product.description = data['description']
    if 'price' in data:
        product.price = parse_price(data['price'])
    if data.get('statusId'):
        set_status(product, parse_status(data['statusId']))

    # find or create the new location, keeping whichever half was not sent
    if 'location_city' in data or 'location_country' in data:
        current = product.location
        city = data['location_city'] if 'location_city' in data else (current.city if current else None)
        country = data['location_country'] if 'location_country' in data else (current.country if current else None)
        if not city:
            raise APIError('City is required for location.', 400)
        product.location = find_or_create_location(city, country)

    if 'categoryIds' in data:
        set_product_categories(product, parse_category_ids(data['categoryIds']))

    files = validate_images(request.files.getlist('images'))
    stored = attach_images(product, files)
    commit_or_cleanup(stored)
    return jsonify({'updatedProduct': product.to_dict()})


@app.route('/api/products/<int:product_id>', methods=['DELETE'])
@login_required
def delete_product(product_id):
    product = get_owned_product(product_id)
    soft_delete_product(product)
    db.session.commit()
    return jsonify({
        'message': 'Product soft-deleted successfully',
        'product': {
            'id': product.id,
            'title': product.title,
            'deleted_at': product.deleted_at.isoformat(),
        },
    })


# Category routes
@app.route('/api/categories')
def get_categories():
    counts = dict(
        db.session.query(CategoryProduct.category_id, func.count(Product.id))
        .join(Product, CategoryProduct.product_id == Product.id)
        .filter(Product.deleted_at.is_(None))
        .group_by(CategoryProduct.category_id)
        .all()
    )
    categories = Category.query.order_by(Category.id).all()
    return jsonify([
        dict(category.to_dict(), productCount=counts.get(category.id, 0))
        for category in categories
    ])


@app.route('/api/categories/<int:category_id>')
def get_category(category_id):
    return jsonify({'category': get_category_or_404(category_id).to_dict()})


def _category_name(data, exclude_id=None):
    name = data.get('name')
    name = name.strip() if isinstance(name, str) else ''
    if not name:
        raise APIError('Category name is required', 400)
    query = Category.query.filter(Category.name == name)
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise Conflict('Category already exists')
    return name


@app.route('/api/categories', methods=['POST'])
@login_required
def create_category():
    category = Category(name=_category_name(request_data()))
    db.session.add(category)
    db.session.commit()
    return jsonify(category.to_dict()), 201


@app.route('/api/categories/<int:category_id>', methods=['PUT'])
@login_required
def update_category(category_id):
    category = get_category_or_404(category_id)
    category.name = _category_name(request_data(), exclude_id=category.id)
    db.session.commit()
    return jsonify(category.to_dict())


@app.route('/api/categories/<int:category_id>', methods=['DELETE'])
@login_required
def delete_category(category_id):
    category = get_category_or_404(category_id)
    if category.product_links:
        raise Conflict('Category is in use')
    deleted = category.to_dict()
    db.session.delete(category)
    db.session.commit()
    return jsonify({'message': 'Category deleted', 'category': deleted})


# Error handlers
@app.errorhandler(APIError)
def api_error(error):
    db.session.rollback()
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(404)
def not_found_error(error):
    return jsonify({
        'error': 'Not Found',
        'message': 'The requested resource does not exist',
        'path': request.path,
    }), 404


@app.errorhandler(HTTPException)
def http_error(error):
    return jsonify({'error': error.name, 'message': error.description}), error.code


@app.errorhandler(Exception)
def internal_error(error):
    db.session.rollback()
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    message = str(error) if config.EXPOSE_ERRORS else 'Internal server error'
    return jsonify({'error': message}), 500


# Create database tables
with app.app_context():
    db.create_all()
    seed_core()
    logger.info("Database ready at %s", config.DATABASE_URL)
    logger.info("Uploads folder path -> %s", config.UPLOAD_FOLDER)


if __name__ == '__main__':
    try:
        app.run(host='0.0.0.0', port=config.PORT, debug=False)
    finally:
        with app.app_context():
            db.engine.dispose()
