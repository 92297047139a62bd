import enum
from datetime import datetime, timezone

from flask_login import UserMixin

from extensions import db


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class ListingStatus(enum.IntEnum):
    """Product status ids as stored in the product_status table."""
    ACTIVE = 1
    SOLD = 2

    @classmethod
    def parse(cls, raw):
        """Return the member for ``raw`` or None when it is not a known status id."""
        try:
            return cls(int(str(raw).strip()))
        except (TypeError, ValueError):
            return None


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    email_verified = db.Column(db.Boolean, default=False, nullable=False)
    google_id = db.Column(db.String(100), unique=True, nullable=True)  # set on first Google login
    username = db.Column(db.String(100), nullable=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    phone_number = db.Column(db.String(20), nullable=True)
    profile_picture_path = db.Column(db.String(500), nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)  # only for password-registered users
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    products = db.relationship('Product', backref='owner', lazy=True, cascade="all, delete-orphan")
    favourites = db.relationship('Favourite', backref='user', lazy=True, cascade="all, delete-orphan")

    def to_dict(self, private=False):
        data = {
            'id': self.id,
            'email': self.email,
            'username': self.username,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'profile_picture_path': self.profile_picture_path,
            'created_at': _iso(self.created_at),
        }
        if private:
            data['email_verified'] = self.email_verified
            data['phone_number'] = self.phone_number
        return data

    def to_owner_dict(self):
        return {'id': self.id, 'username': self.username, 'email': self.email}

    def __repr__(self):
        return f'<User {self.email}>'


class ProductStatus(db.Model):
    __tablename__ = 'product_status'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(20), unique=True, nullable=False)  # 'active', 'sold'

    def to_dict(self):
        return {'id': self.id, 'name': self.name}

    def __repr__(self):
        return f'<ProductStatus {self.name}>'


class Location(db.Model):
    # No unique constraint on (city, country); rows are deduplicated by find-or-create only.
    id = db.Column(db.Integer, primary_key=True)
    city = db.Column(db.String(100), nullable=False)
    country = db.Column(db.String(100), nullable=True)

    def to_dict(self):
        return {'id': self.id, 'city': self.city, 'country': self.country}

    def __repr__(self):
        return f'<Location {self.city}, {self.country}>'


class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)

    def to_dict(self):
        return {'id': self.id, 'name': self.name}

    def __repr__(self):
        return f'<Category {self.name}>'


class CategoryProduct(db.Model):
    __tablename__ = 'category_product'
    __table_args__ = (
        db.UniqueConstraint('category_id', 'product_id', name='uq_category_product'),
    )

    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)

    category = db.relationship('Category', backref=db.backref('product_links', lazy=True))


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    price = db.Column(db.Float, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status_id = db.Column(db.Integer, db.ForeignKey('product_status.id'), nullable=False,
                          default=int(ListingStatus.ACTIVE))
    location_id = db.Column(db.Integer, db.ForeignKey('location.id'), nullable=True)
    deleted_at = db.Column(db.DateTime, nullable=True)  # NULL means visible
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    status = db.relationship('ProductStatus')
    location = db.relationship('Location')
    categories = db.relationship('CategoryProduct', backref='product', lazy=True,
                                 cascade="all, delete-orphan")
    images = db.relationship('Image', backref='product', lazy=True,
                             cascade="all, delete-orphan", order_by='Image.id')
    favourited_by = db.relationship('Favourite', backref='product', lazy=True,
                                    cascade="all, delete-orphan")

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'price': self.price,
            'userId': self.user_id,
            'statusId': self.status_id,
            'locationId': self.location_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'deleted_at': _iso(self.deleted_at),
            'categories': [{'category': link.category.to_dict()} for link in self.categories],
            'images': [image.to_dict() for image in self.images],
            'status': self.status.to_dict() if self.status else None,
            'location': self.location.to_dict() if self.location else None,
            'user': self.owner.to_owner_dict() if self.owner else None,
        }

    def __repr__(self):
        return f'<Product {self.title}>'


class Image(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    url = db.Column(db.String(500), nullable=False)  # public path, e.g. /uploads/<name>
    is_primary = db.Column(db.Boolean, default=False, nullable=False)

    def to_dict(self):
        return {'id': self.id, 'url': self.url, 'isPrimary': self.is_primary}

    def __repr__(self):
        return f'<Image {self.url}>'


class Favourite(db.Model):
    __table_args__ = (
        db.UniqueConstraint('user_id', 'product_id', name='uq_favourite_user_product'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'productId': self.product_id,
            'created_at': _iso(self.created_at),
        }
