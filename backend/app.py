import hashlib
import hmac
import json
import math
import os
import re
import secrets
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from uuid import uuid4
from urllib.parse import urljoin

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    create_refresh_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
    verify_jwt_in_request,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

import notifications
import payfast
from pricing import (
    DISCOUNT_TYPES,
    CouponError,
    OrderError,
    calculate_discount,
    calculate_order_total,
    coupon_rejection_reason,
    record_coupon_use,
    resolve_unit_price,
    safe_float,
    safe_positive_int,
    validate_coupon,
)

load_dotenv()

_configured_admin_email = os.getenv(
    "DEFAULT_ADMIN_EMAIL", "admin@peachflask.com"
) or "admin@peachflask.com"
DEFAULT_ADMIN_EMAIL = _configured_admin_email.strip().lower()
DEFAULT_ADMIN_NAME = (
    os.getenv("DEFAULT_ADMIN_NAME", "Peach Flask Admin") or "Peach Flask Admin"
).strip()


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` replaces the PyMongo connection; tests pass a mongomock database.
    """
    app = Flask(__name__)

    # Honor proxy headers so generated links (images, payment callbacks) keep the public origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(minutes=15)
    app.config["JWT_REFRESH_TOKEN_EXPIRES"] = timedelta(days=7)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/peachflask"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["PRODUCT_UPLOAD_FOLDER"] = os.path.join(app.root_path, "uploads")
    app.config["PRODUCT_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}

    app.config["DEFAULT_ADMIN_EMAIL"] = DEFAULT_ADMIN_EMAIL
    app.config["STORE_NAME"] = os.getenv("STORE_NAME", "Peach Flask")
    app.config["SUPPORT_EMAIL"] = os.getenv("SUPPORT_EMAIL", "support@peachflask.com")
    app.config["SUPPORT_CONTACT_NUMBER"] = os.getenv("SUPPORT_CONTACT_NUMBER", "")
    app.config["CURRENCY_LABEL"] = os.getenv("CURRENCY_LABEL", "Rs")
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "").strip()
    app.config["TRACKING_BASE_URL"] = os.getenv("TRACKING_BASE_URL", "").strip()
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["EMAIL_FROM"] = (
        os.getenv("EMAIL_FROM", "Peach Flask <orders@peachflask.com>")
        or "Peach Flask <orders@peachflask.com>"
    )
    app.config["WHATSAPP_PHONE_NUMBER_ID"] = (
        os.getenv("WHATSAPP_PHONE_NUMBER_ID") or ""
    ).strip()
    app.config["WHATSAPP_ACCESS_TOKEN"] = (os.getenv("WHATSAPP_ACCESS_TOKEN") or "").strip()
    app.config["PAYFAST"] = {
        "url": os.getenv("PAYFAST_URL", payfast.PAYFAST_SANDBOX_URL),
        "merchant_id": os.getenv("PAYFAST_MERCHANT_ID", ""),
        "merchant_key": os.getenv("PAYFAST_MERCHANT_KEY", ""),
        "passphrase": os.getenv("PAYFAST_PASSPHRASE", ""),
        "return_url": os.getenv("PAYFAST_RETURN_URL", ""),
        "cancel_url": os.getenv("PAYFAST_CANCEL_URL", ""),
        "notify_url": os.getenv("PAYFAST_NOTIFY_URL", ""),
    }

    if test_config:
        app.config.update(test_config)

    os.makedirs(app.config["PRODUCT_UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "https://peachflask.com",
        app.config["FRONTEND_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
    else:
        db = database

    default_admin_email = normalize_email_value(app.config["DEFAULT_ADMIN_EMAIL"])

    try:
        db.users.create_index("email", unique=True)
        db.categories.create_index("slug", unique=True)
        db.products.create_index("slug", unique=True)
        db.coupons.create_index("code", unique=True)
        db.orders.create_index([("user", 1), ("created_at", -1)])
        db.verification_codes.create_index("expires_at", expireAfterSeconds=0)
        db.token_blocklist.create_index("expires_at", expireAfterSeconds=0)
    except Exception as exc:
        app.logger.warning("Unable to ensure database indexes: %s", exc)

    # --- Helpers ---

    ALLOWED_USER_ROLES = {"admin", "user"}
    VERIFICATION_METHODS = {"email", "phone"}
    OTP_CODE_LENGTH = 6
    OTP_EXPIRATION_MINUTES = 10
    MAX_FAILED_OTP_ATTEMPTS = 5
    PASSWORD_RESET_EXPIRATION_MINUTES = 30
    MIN_PASSWORD_LENGTH = 6
    PRICE_OPTION_TYPES = {"packet", "weight-based"}
    MAX_PRICE_OPTIONS = 10
    SETTINGS_ID = "store_settings"
    ORDER_STATUSES = ("processing", "shipped", "delivered", "cancelled", "returned")
    RESTOCK_STATUSES = {"Cancelled", "Returned"}
    PAYMENT_METHODS = {"cod": "COD", "payfast": "PayFast"}
    SHIPPING_ADDRESS_FIELDS = (
        ("full_name", "fullName"),
        ("address", "address"),
        ("city", "city"),
        ("postal_code", "postalCode"),
        ("country", "country"),
        ("email", "email"),
        ("phone", "phone"),
    )
    STATS_PERIODS = {"week": 7, "month": 30, "year": 365}

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    def normalize_email(value: Optional[str]) -> str:
        return normalize_email_value(value)

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "user"

    def get_user_role(user_document) -> str:
        if not user_document:
            return "user"

        email = normalize_email(user_document.get("email"))
        if email == default_admin_email:
            return "admin"

        return normalize_role(user_document.get("role", "user"))

    def get_current_user():
        identity = normalize_email(get_jwt_identity())
        if not identity:
            return None
        return db.users.find_one({"email": identity})

    def require_authenticated_user():
        current_user = get_current_user()
        if not current_user:
            return None, (jsonify({"message": "Not authenticated"}), 401)
        return current_user, None

    def require_admin_user():
        current_user, auth_error = require_authenticated_user()
        if auth_error:
            return None, auth_error
        if get_user_role(current_user) != "admin":
            return None, (jsonify({"message": "Not authorized as admin"}), 403)
        return current_user, None

    def parse_object_id(value):
        if isinstance(value, ObjectId):
            return value
        if value is None:
            return None
        try:
            return ObjectId(str(value).strip())
        except (InvalidId, TypeError):
            return None

    def normalize_object_id_list(values) -> List[ObjectId]:
        normalized_ids: List[ObjectId] = []
        if not values:
            return normalized_ids
        if not isinstance(values, (list, tuple, set)):
            values = parse_json_list(values)
        for value in values:
            object_id = parse_object_id(value)
            if object_id and object_id not in normalized_ids:
                normalized_ids.append(object_id)
        return normalized_ids

    def parse_json_list(value):
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return [item for item in value]
        if isinstance(value, (bytes, bytearray)):
            try:
                value = value.decode("utf-8")
            except UnicodeDecodeError:
                value = ""
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return []
            try:
                parsed = json.loads(candidate)
                if isinstance(parsed, list):
                    return parsed
            except (json.JSONDecodeError, ValueError):
                pass
            if "," in candidate:
                return [
                    item.strip()
                    for item in candidate.split(",")
                    if item and item.strip()
                ]
            return [candidate]
        return []

    def parse_bool(value, default: bool = False) -> bool:
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"true", "1", "yes", "on"}

    def parse_iso_date(value, *, end_of_day: bool = False):
        if isinstance(value, datetime):
            parsed = value
        else:
            if not value:
                return None
            candidate = str(value).strip()
            if not candidate:
                return None
            normalized = candidate.replace("Z", "+00:00")
            if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
                normalized = f"{candidate}T00:00:00"
            try:
                parsed = datetime.fromisoformat(normalized)
            except ValueError:
                return None
            if end_of_day and re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
                parsed = parsed + timedelta(days=1)
        # Stored timestamps are naive UTC.
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    def format_datetime(value) -> Optional[str]:
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is not None:
            return value.isoformat()
        return f"{value.isoformat()}Z"

    def serialize_id(value) -> Optional[str]:
        return str(value) if value is not None else None

    # --- Account helpers ---

    def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
        upper_bound = 10**length
        return f"{secrets.randbelow(upper_bound):0{length}d}"

    def persist_verification_code(email: str, otp: str) -> datetime:
        expires_at = datetime.utcnow() + timedelta(minutes=OTP_EXPIRATION_MINUTES)
        hashed_code = bcrypt.hashpw(otp.encode("utf-8"), bcrypt.gensalt())

        db.verification_codes.update_one(
            {"email": email},
            {
                "$set": {
                    "email": email,
                    "otp_hash": hashed_code,
                    "expires_at": expires_at,
                    "created_at": datetime.utcnow(),
                    "failed_attempts": 0,
                }
            },
            upsert=True,
        )

        return expires_at

    def dispatch_verification_code(user_document):
        email = normalize_email(user_document.get("email"))
        otp = generate_otp_code()
        expires_at = persist_verification_code(email, otp)

        sent, error_details = notifications.send_verification_code(
            user_document, otp, OTP_EXPIRATION_MINUTES
        )
        if not sent:
            db.verification_codes.delete_one({"email": email})
            app.logger.error(
                "Verification code dispatch failed for %s: %s",
                email,
                error_details or "Unknown delivery error",
            )
            return {
                "success": False,
                "error": error_details or "Failed to deliver the verification code.",
            }

        return {"success": True, "expires_at": expires_at}

    def hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def issue_tokens(user_document) -> Dict[str, object]:
        email = normalize_email(user_document.get("email"))
        return {
            "accessToken": create_access_token(identity=email),
            "refreshToken": create_refresh_token(identity=email),
            "user": serialize_user_profile(user_document),
        }

    def serialize_user_profile(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        return {
            "id": serialize_id(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "phone": user_document.get("phone", "") or "",
            "avatar": user_document.get("avatar", "") or "",
            "role": get_user_role(user_document),
            "verificationMethod": user_document.get("verification_method") or "email",
            "isVerified": bool(user_document.get("is_verified")),
        }

    def serialize_admin_user(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        return {
            **serialize_user_profile(user_document),
            "createdAt": format_datetime(user_document.get("created_at")),
            "lastLoginAt": format_datetime(user_document.get("last_login_at")),
        }

    # --- Catalog helpers ---

    def normalize_category_name(value: Optional[str]) -> str:
        if value is None:
            return ""
        condensed = " ".join(str(value).split())
        return condensed.strip()

    def slugify(value: Optional[str]) -> str:
        normalized_name = normalize_category_name(value).lower()
        ascii_name = (
            unicodedata.normalize("NFKD", normalized_name)
            .encode("ascii", "ignore")
            .decode("ascii")
        )
        slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
        if not slug:
            slug = uuid4().hex
        return slug

    def build_unique_slug(collection, value: str, exclude_id=None) -> str:
        base_slug = slugify(value)
        candidate = base_slug
        suffix = 2
        while True:
            query: Dict[str, object] = {"slug": candidate}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if not collection.find_one(query):
                return candidate
            candidate = f"{base_slug}-{suffix}"
            suffix += 1

    def serialize_category(category_document, product_counts=None):
        if not category_document:
            return {}
        category_id = category_document.get("_id")
        return {
            "id": serialize_id(category_id),
            "name": category_document.get("name", "") or "",
            "slug": category_document.get("slug", "") or "",
            "description": category_document.get("description", "") or "",
            "isActive": bool(category_document.get("is_active", True)),
            "productCount": int((product_counts or {}).get(category_id, 0)),
            "createdAt": format_datetime(category_document.get("created_at")),
        }

    def build_category_product_counts() -> Dict[ObjectId, int]:
        counts: Dict[ObjectId, int] = {}
        for product in db.products.find({}, {"category_ids": 1}):
            for category_id in product.get("category_ids") or []:
                counts[category_id] = counts.get(category_id, 0) + 1
        return counts

    def fetch_categories_by_ids(category_ids) -> Dict[ObjectId, Dict]:
        if not category_ids:
            return {}
        documents = db.categories.find({"_id": {"$in": list(category_ids)}})
        return {document["_id"]: document for document in documents}

    def find_category(identifier: Optional[str]):
        if not identifier:
            return None
        object_id = parse_object_id(identifier)
        if object_id:
            category_document = db.categories.find_one({"_id": object_id})
            if category_document:
                return category_document
        return db.categories.find_one({"slug": str(identifier).strip().lower()})

    def get_store_settings() -> Dict[str, object]:
        settings_document = db.settings.find_one({"_id": SETTINGS_ID})
        if not settings_document:
            return {"_id": SETTINGS_ID, "shipping_fee": 0.0}
        return settings_document

    def serialize_settings(settings_document) -> Dict[str, object]:
        return {
            "id": serialize_id(settings_document.get("_id")),
            "shippingFee": round(safe_float(settings_document.get("shipping_fee"), 0.0), 2),
            "updatedAt": format_datetime(settings_document.get("updated_at")),
        }

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PRODUCT_ALLOWED_EXTENSIONS"]

    def build_upload_url(filename: Optional[str]) -> str:
        if not filename:
            return ""

        sanitized = str(filename).strip()
        if not sanitized:
            return ""

        return urljoin(request.host_url, f"uploads/{sanitized}")

    def save_product_image(image_file):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "An image file is required."

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(
            app.config["PRODUCT_UPLOAD_FOLDER"], unique_filename
        )

        try:
            image_file.save(destination)
        except OSError:
            return None, "We could not store the uploaded image. Please try again."

        return {"public_id": unique_filename, "url": build_upload_url(unique_filename)}, None

    def save_product_images(image_files):
        saved_images: List[Dict[str, str]] = []
        if not image_files:
            return saved_images, None

        for image_file in image_files:
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            saved_image, image_error = save_product_image(image_file)
            if image_error:
                remove_product_images(saved_images)
                return [], image_error
            saved_images.append(saved_image)

        return saved_images, None

    def remove_product_images(images):
        for image in images or []:
            public_id = secure_filename(str((image or {}).get("public_id") or ""))
            if not public_id:
                continue
            target = os.path.join(app.config["PRODUCT_UPLOAD_FOLDER"], public_id)
            try:
                os.remove(target)
            except FileNotFoundError:
                continue
            except OSError as exc:
                app.logger.warning("Unable to remove product image %s: %s", public_id, exc)

    def normalize_image_list(raw_value) -> List[Dict[str, str]]:
        images: List[Dict[str, str]] = []
        for entry in parse_json_list(raw_value):
            if isinstance(entry, dict):
                url = str(entry.get("url") or "").strip()
                public_id = str(entry.get("public_id") or entry.get("publicId") or "").strip()
            else:
                url = str(entry or "").strip()
                public_id = ""
            if url:
                images.append({"public_id": public_id, "url": url})
        return images

    def parse_stock(value) -> Tuple[Optional[int], Optional[str]]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0, None
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return None, "Stock must be a whole number."
        if not math.isfinite(numeric) or numeric < 0 or numeric != int(numeric):
            return None, "Stock must be a whole number of zero or more."
        return int(numeric), None

    def normalize_price_options(raw_value, existing_options=None):
        candidates = parse_json_list(raw_value)
        if not candidates:
            return [], "Add at least one price option."
        if len(candidates) > MAX_PRICE_OPTIONS:
            return [], f"You can specify up to {MAX_PRICE_OPTIONS} price options per product."

        existing_ids = {
            str(option.get("_id")): option.get("_id")
            for option in existing_options or []
            if option.get("_id") is not None
        }
        normalized: List[Dict[str, object]] = []

        for entry in candidates:
            if not isinstance(entry, dict):
                return [], "Each price option must be an object."

            option_type = str(entry.get("type") or "packet").strip().lower()
            if option_type not in PRICE_OPTION_TYPES:
                return [], "Price option type must be 'packet' or 'weight-based'."

            price_value = safe_float(entry.get("price"), -1.0)
            if price_value <= 0:
                return [], "Price must be greater than zero."

            raw_sale_price = entry.get("salePrice", entry.get("sale_price"))
            sale_price_value = None
            if raw_sale_price not in (None, "") and safe_float(raw_sale_price, -1.0) != 0:
                sale_price_value = safe_float(raw_sale_price, -1.0)
                if sale_price_value <= 0:
                    return [], "Sale price must be greater than zero."
                if sale_price_value >= price_value:
                    return [], "Sale price must be lower than the standard price."

            weight_value = safe_float(entry.get("weight"), 0.0)
            if option_type == "weight-based" and weight_value <= 0:
                return [], "Weight-based options need a weight in grams."

            provided_id = str(entry.get("id") or entry.get("_id") or "").strip()
            option_id = existing_ids.get(provided_id) or ObjectId()

            normalized.append(
                {
                    "_id": option_id,
                    "type": option_type,
                    "weight": weight_value,
                    "price": round(price_value, 2),
                    "sale_price": round(sale_price_value, 2)
                    if sale_price_value is not None
                    else None,
                }
            )

        return normalized, None

    def resolve_category_ids(raw_value) -> Tuple[List[ObjectId], Optional[str]]:
        category_ids = normalize_object_id_list(raw_value)
        if not category_ids:
            return [], None
        found = fetch_categories_by_ids(category_ids)
        missing = [str(category_id) for category_id in category_ids if category_id not in found]
        if missing:
            return [], f"Unknown categories: {', '.join(missing)}"
        return category_ids, None

    def calculate_sale_percentage(price_options) -> int:
        best = 0
        for option in price_options or []:
            price_value = safe_float(option.get("price"), 0.0)
            sale_price_value = safe_float(option.get("sale_price"), 0.0)
            if price_value > 0 and 0 < sale_price_value < price_value:
                best = max(best, round((price_value - sale_price_value) / price_value * 100))
        return best

    def serialize_product(product_document, category_map=None):
        if not product_document:
            return None

        category_map = category_map or {}
        stock = safe_positive_int(product_document.get("stock"), 0)
        price_options = product_document.get("price_options") or []
        categories = []
        for category_id in product_document.get("category_ids") or []:
            category_document = category_map.get(category_id)
            if category_document:
                categories.append(
                    {
                        "id": str(category_id),
                        "name": category_document.get("name", ""),
                        "slug": category_document.get("slug", ""),
                    }
                )

        return {
            "id": serialize_id(product_document.get("_id")),
            "name": product_document.get("name", "") or "",
            "slug": product_document.get("slug", "") or "",
            "description": product_document.get("description", "") or "",
            "stock": stock,
            "inStock": stock > 0,
            "categories": categories,
            "images": [
                {"publicId": image.get("public_id", ""), "url": image.get("url", "")}
                for image in product_document.get("images") or []
            ],
            "priceOptions": [
                {
                    "id": serialize_id(option.get("_id")),
                    "type": option.get("type", "packet"),
                    "weight": option.get("weight", 0),
                    "price": option.get("price", 0),
                    "salePrice": option.get("sale_price"),
                }
                for option in price_options
            ],
            "sale": calculate_sale_percentage(price_options),
            "ratings": safe_float(product_document.get("ratings"), 0.0),
            "numOfReviews": safe_positive_int(product_document.get("num_of_reviews"), 0),
            "createdAt": format_datetime(product_document.get("created_at")),
            "updatedAt": format_datetime(product_document.get("updated_at")),
        }

    def serialize_products(product_documents):
        category_ids = set()
        for document in product_documents:
            category_ids.update(document.get("category_ids") or [])
        category_map = fetch_categories_by_ids(category_ids)
        return [serialize_product(document, category_map) for document in product_documents]

    def fetch_product(product_identifier: str):
        object_id = parse_object_id(product_identifier)
        product_document = None
        if object_id:
            product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            product_document = db.products.find_one(
                {"slug": str(product_identifier or "").strip().lower()}
            )
        if not product_document:
            return None, (jsonify({"message": "Product not found."}), 404)
        return product_document, None

    def read_product_payload():
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        image_files = request.files.getlist("images") if request.files else []
        return payload, image_files

    # --- Coupon helpers ---

    COUPON_FIELD_ALIASES = {
        "discount_type": ("discountType", "discount_type"),
        "discount_value": ("discountValue", "discount_value"),
        "min_purchase": ("minPurchase", "min_purchase"),
        "max_purchase": ("maxPurchase", "max_purchase"),
        "total_coupons": ("totalCoupons", "total_coupons"),
        "max_uses_per_user": ("maxUsesPerUser", "max_uses_per_user"),
        "start_at": ("startAt", "start_at"),
        "expires_at": ("expiresAt", "expires_at"),
        "is_active": ("isActive", "is_active"),
        "eligible_users": ("eligibleUsers", "eligible_users"),
        "eligible_products": ("eligibleProducts", "eligible_products"),
    }

    def normalize_coupon_code(value) -> str:
        return re.sub(r"\s+", "", str(value or "")).upper()

    def normalize_coupon_payload(payload: Dict, existing=None):
        base = existing or {}
        values: Dict[str, object] = {}
        for field, aliases in COUPON_FIELD_ALIASES.items():
            values[field] = base.get(field)
            for alias in aliases:
                if alias in payload:
                    values[field] = payload.get(alias)
                    break

        fields: Dict[str, object] = {}
        if existing is None:
            code = normalize_coupon_code(payload.get("code"))
            if not code:
                return None, "A coupon code is required."
            if not re.fullmatch(r"[A-Z0-9_-]{3,32}", code):
                return None, "Coupon codes use 3-32 letters, digits, dashes or underscores."
            fields["code"] = code

        discount_type = str(values["discount_type"] or "percentage").strip().lower()
        if discount_type not in DISCOUNT_TYPES:
            return None, "Discount type must be 'percentage' or 'fixed'."

        discount_value = safe_float(values["discount_value"], 0.0)
        if discount_value <= 0:
            return None, "Discount value must be greater than zero."
        if discount_type == "percentage" and discount_value > 100:
            return None, "A percentage discount cannot exceed 100."

        min_purchase = safe_float(values["min_purchase"], 0.0)
        if min_purchase < 0:
            return None, "Minimum purchase cannot be negative."

        max_purchase = None
        if values["max_purchase"] not in (None, ""):
            max_purchase = safe_float(values["max_purchase"], -1.0)
            if max_purchase <= min_purchase:
                return None, "Maximum purchase must be greater than the minimum purchase."

        total_coupons = safe_positive_int(values["total_coupons"], 0)
        if total_coupons < 1:
            return None, "Total coupons must be at least 1."
        used_coupons = safe_positive_int(base.get("used_coupons"), 0)
        if total_coupons < used_coupons:
            return None, f"{used_coupons} coupons have already been used."

        max_uses_per_user = safe_positive_int(values["max_uses_per_user"], 0) or 1

        start_at = parse_iso_date(values["start_at"])
        if values["start_at"] in (None, "") and existing is None:
            start_at = datetime.utcnow()
        expires_at = parse_iso_date(values["expires_at"])
        if not start_at or not expires_at:
            return None, "Please enter valid dates."
        if expires_at <= start_at:
            return None, "The expiry date must be after the live date."

        fields.update(
            {
                "discount_type": discount_type,
                "discount_value": round(discount_value, 2),
                "min_purchase": round(min_purchase, 2),
                "max_purchase": round(max_purchase, 2) if max_purchase is not None else None,
                "total_coupons": total_coupons,
                "max_uses_per_user": max_uses_per_user,
                "start_at": start_at,
                "expires_at": expires_at,
                "is_active": parse_bool(values["is_active"], default=True),
                "eligible_users": normalize_object_id_list(values["eligible_users"]),
                "eligible_products": normalize_object_id_list(values["eligible_products"]),
            }
        )
        return fields, None

    def serialize_coupon(coupon_document):
        if not coupon_document:
            return None
        return {
            "id": serialize_id(coupon_document.get("_id")),
            "code": coupon_document.get("code", ""),
            "discountType": coupon_document.get("discount_type", "percentage"),
            "discountValue": coupon_document.get("discount_value", 0),
            "minPurchase": coupon_document.get("min_purchase", 0),
            "maxPurchase": coupon_document.get("max_purchase"),
            "totalCoupons": coupon_document.get("total_coupons", 0),
            "usedCoupons": coupon_document.get("used_coupons", 0),
            "maxUsesPerUser": coupon_document.get("max_uses_per_user", 1),
            "startAt": format_datetime(coupon_document.get("start_at")),
            "expiresAt": format_datetime(coupon_document.get("expires_at")),
            "isActive": bool(coupon_document.get("is_active")),
            "eligibleUsers": [str(value) for value in coupon_document.get("eligible_users") or []],
            "eligibleProducts": [
                str(value) for value in coupon_document.get("eligible_products") or []
            ],
            "usedBy": [
                {
                    "userId": serialize_id(entry.get("user_id")),
                    "timesUsed": entry.get("times_used", 0),
                }
                for entry in coupon_document.get("used_by") or []
            ],
            "createdAt": format_datetime(coupon_document.get("created_at")),
        }

    def list_serialized_coupons():
        return [serialize_coupon(document) for document in db.coupons.find().sort("created_at", -1)]

    # --- Order helpers ---

    def normalize_shipping_address(payload) -> Tuple[Dict[str, str], List[str]]:
        payload = payload if isinstance(payload, dict) else {}
        address: Dict[str, str] = {}
        missing: List[str] = []
        for field, camel_name in SHIPPING_ADDRESS_FIELDS:
            value = payload.get(camel_name, payload.get(field))
            trimmed = str(value).strip() if value is not None else ""
            if not trimmed:
                missing.append(camel_name)
                continue
            address[field] = normalize_email(trimmed) if field == "email" else trimmed
        return address, missing

    def normalize_payment_method(value) -> Optional[str]:
        normalized = str(value or "cod").strip().lower().replace(" ", "")
        return PAYMENT_METHODS.get(normalized)

    def resolve_order_items(raw_items) -> Tuple[List[Dict[str, object]], float]:
        if not isinstance(raw_items, list) or not raw_items:
            raise OrderError("Include at least one item in your order.", 400)

        order_items: List[Dict[str, object]] = []
        requested_stock: Dict[ObjectId, int] = {}
        subtotal = 0.0

        for entry in raw_items:
            if not isinstance(entry, dict):
                raise OrderError("Each order item must be an object.", 400)

            product_identifier = (
                entry.get("productId") or entry.get("product_id") or entry.get("product")
            )
            product_id = parse_object_id(product_identifier)
            product_document = db.products.find_one({"_id": product_id}) if product_id else None
            if not product_document:
                raise OrderError(f"Product {product_identifier} not found", 404)

            option_identifier = str(
                entry.get("priceOptionId")
                or entry.get("price_option_id")
                or entry.get("optionId")
                or ""
            ).strip()
            price_option = next(
                (
                    option
                    for option in product_document.get("price_options") or []
                    if str(option.get("_id")) == option_identifier
                ),
                None,
            )
            if not price_option:
                raise OrderError("Invalid price option", 400)

            quantity = safe_positive_int(entry.get("quantity"), 0)
            if quantity < 1:
                raise OrderError("Quantity must be at least 1.", 400)

            # Lines for different options of one product draw on the same stock.
            requested_stock[product_id] = requested_stock.get(product_id, 0) + quantity
            available = safe_positive_int(product_document.get("stock"), 0)
            if available < requested_stock[product_id]:
                raise OrderError(
                    f"Insufficient stock for {product_document.get('name')}. Available: {available}",
                    400,
                )

            unit_price = resolve_unit_price(price_option)
            images = product_document.get("images") or []
            order_items.append(
                {
                    "product": product_document["_id"],
                    "name": product_document.get("name", ""),
                    "price_option": {
                        "_id": price_option.get("_id"),
                        "type": price_option.get("type", "packet"),
                        "weight": price_option.get("weight", 0),
                        "price": unit_price,
                        "sale_price": price_option.get("sale_price"),
                    },
                    "quantity": quantity,
                    "image": (images[0] or {}).get("url", "") if images else "",
                }
            )
            subtotal += unit_price * quantity

        return order_items, round(subtotal, 2)

    def release_stock(order_items):
        for item in order_items or []:
            quantity = safe_positive_int(item.get("quantity"), 0)
            if item.get("product") is None or not quantity:
                continue
            db.products.update_one({"_id": item["product"]}, {"$inc": {"stock": quantity}})

    def reserve_stock(order_items):
        reserved = []
        try:
            for item in order_items:
                updated = db.products.find_one_and_update(
                    {"_id": item["product"], "stock": {"$gte": item["quantity"]}},
                    {"$inc": {"stock": -item["quantity"]}},
                )
                if updated is None:
                    raise OrderError(
                        f"Insufficient stock for {item.get('name')}. Please review your cart.",
                        409,
                    )
                reserved.append(item)
        except Exception:
            release_stock(reserved)
            raise
        return reserved

    def apply_coupon_usage(coupon_document, user_id):
        result = db.coupons.update_one(
            {
                "_id": coupon_document["_id"],
                "used_coupons": safe_positive_int(coupon_document.get("used_coupons"), 0),
            },
            {
                "$set": {
                    "used_by": record_coupon_use(coupon_document.get("used_by"), user_id),
                    "updated_at": datetime.utcnow(),
                },
                "$inc": {"used_coupons": 1},
            },
        )
        if not result.modified_count:
            raise CouponError(
                "This coupon was just redeemed by another order. Please try again.", 409
            )

    def place_order(order_document, coupon_document, user_document):
        reserved = reserve_stock(order_document["items"])
        inserted = False
        try:
            db.orders.insert_one(order_document)
            inserted = True
            if coupon_document:
                apply_coupon_usage(coupon_document, user_document["_id"])
        except Exception:
            if inserted:
                db.orders.delete_one({"_id": order_document["_id"]})
            release_stock(reserved)
            raise
        return order_document

    def restock_order_once(order_document) -> bool:
        result = db.orders.update_one(
            {"_id": order_document["_id"], "stock_restored": {"$ne": True}},
            {"$set": {"stock_restored": True}},
        )
        if not result.modified_count:
            return False
        release_stock(order_document.get("items"))
        return True

    def find_order_owner(order_document):
        user_id = order_document.get("user")
        if not user_id:
            return None
        return db.users.find_one({"_id": user_id})

    def can_access_order(order_document, user_document) -> bool:
        if not order_document or not user_document:
            return False
        if get_user_role(user_document) == "admin":
            return True
        owner_id = order_document.get("user")
        return bool(owner_id) and str(owner_id) == str(user_document.get("_id"))

    def serialize_order(order_document, populate: bool = False):
        if not order_document:
            return None

        user_value = order_document.get("user")
        if populate and user_value:
            owner = db.users.find_one({"_id": user_value})
            serialized_user = (
                {
                    "id": str(owner["_id"]),
                    "name": owner.get("name", ""),
                    "email": owner.get("email", ""),
                    "phone": owner.get("phone", ""),
                }
                if owner
                else serialize_id(user_value)
            )
        else:
            serialized_user = serialize_id(user_value)

        product_map: Dict[ObjectId, Dict] = {}
        if populate:
            product_ids = [item.get("product") for item in order_document.get("items") or []]
            product_map = {
                document["_id"]: document
                for document in db.products.find({"_id": {"$in": product_ids}})
            }

        serialized_items = []
        for item in order_document.get("items") or []:
            product_id = item.get("product")
            product_document = product_map.get(product_id)
            price_option = item.get("price_option") or {}
            serialized_items.append(
                {
                    "product": {
                        "id": str(product_id),
                        "name": product_document.get("name", ""),
                        "images": [
                            {"publicId": image.get("public_id", ""), "url": image.get("url", "")}
                            for image in product_document.get("images") or []
                        ],
                    }
                    if product_document
                    else serialize_id(product_id),
                    "name": item.get("name", ""),
                    "priceOption": {
                        "id": serialize_id(price_option.get("_id")),
                        "type": price_option.get("type", "packet"),
                        "weight": price_option.get("weight", 0),
                        "price": price_option.get("price", 0),
                        "salePrice": price_option.get("sale_price"),
                    },
                    "quantity": item.get("quantity", 0),
                    "image": item.get("image", ""),
                }
            )

        coupon_value = order_document.get("coupon_used")
        serialized_coupon = serialize_id(coupon_value)
        if populate and coupon_value:
            coupon_document = db.coupons.find_one({"_id": coupon_value})
            if coupon_document:
                serialized_coupon = {
                    "id": str(coupon_document["_id"]),
                    "code": coupon_document.get("code", ""),
                    "discountType": coupon_document.get("discount_type", ""),
                    "discountValue": coupon_document.get("discount_value", 0),
                }

        shipping_address = order_document.get("shipping_address") or {}
        return {
            "id": serialize_id(order_document.get("_id")),
            "user": serialized_user,
            "items": serialized_items,
            "subtotal": order_document.get("subtotal", 0),
            "shippingCost": order_document.get("shipping_cost", 0),
            "discount": order_document.get("discount", 0),
            "totalAmount": order_document.get("total_amount", 0),
            "shippingAddress": {
                camel_name: shipping_address.get(field, "")
                for field, camel_name in SHIPPING_ADDRESS_FIELDS
            },
            "paymentMethod": order_document.get("payment_method", ""),
            "paymentResult": order_document.get("payment_result"),
            "couponUsed": serialized_coupon,
            "status": order_document.get("status", ""),
            "trackingId": order_document.get("tracking_id"),
            "createdAt": format_datetime(order_document.get("created_at")),
            "updatedAt": format_datetime(order_document.get("updated_at")),
        }

    def stats_date_range(period: str) -> Dict[str, datetime]:
        now = datetime.utcnow()
        days = STATS_PERIODS.get(str(period or "").strip().lower())
        start = now - timedelta(days=days) if days else datetime(1970, 1, 1)
        return {"$gte": start, "$lte": now}

    @jwt.token_in_blocklist_loader
    def is_token_revoked(jwt_header, jwt_payload) -> bool:
        return db.token_blocklist.find_one({"jti": jwt_payload.get("jti")}) is not None

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["PRODUCT_UPLOAD_FOLDER"], filename)

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        name = str(payload.get("name", "")).strip()
        password = str(payload.get("password", ""))
        phone = str(payload.get("phone", "")).strip()
        verification_method = (
            str(
                payload.get("verificationMethod")
                or payload.get("verification_method")
                or "email"
            )
            .strip()
            .lower()
        )

        if not email or not name or not password:
            return (
                jsonify({"message": "Name, email, and password are required to create an account."}),
                400,
            )
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400
        if len(password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters."}
                ),
                400,
            )
        if verification_method not in VERIFICATION_METHODS:
            return jsonify({"message": "Verification method must be 'email' or 'phone'."}), 400
        if verification_method == "phone" and not phone:
            return (
                jsonify({"message": "A phone number is required for WhatsApp verification."}),
                400,
            )

        if db.users.find_one({"email": email}):
            return jsonify({"message": "An account with this email already exists."}), 400

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        user_document = {
            "email": email,
            "name": name,
            "phone": phone,
            "password": hashed_pw,
            "role": "admin" if email == default_admin_email else "user",
            "verification_method": verification_method,
            "is_verified": False,
            "created_at": datetime.utcnow(),
        }

        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"message": "An account with this email already exists."}), 400

        otp_result = dispatch_verification_code(user_document)
        if not otp_result.get("success"):
            db.users.delete_one({"_id": insert_result.inserted_id})
            return (
                jsonify(
                    {
                        "message": "Account creation failed while sending the verification code. Please try again.",
                        "error": otp_result.get("error"),
                    }
                ),
                502,
            )

        app.logger.info("Registered new account %s", email)

        return (
            jsonify(
                {
                    "message": "Account created. Enter the verification code we sent to continue.",
                    "email": email,
                    "requiresVerification": True,
                    "otpLength": OTP_CODE_LENGTH,
                    "expiresInSeconds": OTP_EXPIRATION_MINUTES * 60,
                    "expiresAt": format_datetime(otp_result.get("expires_at")),
                }
            ),
            201,
        )

    @app.route("/api/auth/verify", methods=["POST"])
    def verify_account():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        otp = str(payload.get("otp", "")).strip()
        invalid_code_response = (
            jsonify({"message": "Invalid or expired verification code."}),
            400,
        )

        if not email or not otp:
            return jsonify({"message": "Email and verification code are required."}), 400

        user = db.users.find_one({"email": email})
        if not user:
            return invalid_code_response
        if user.get("is_verified"):
            return jsonify({"message": "This account is already verified. Please log in."}), 400

        record = db.verification_codes.find_one({"email": email})
        expires_at = record.get("expires_at") if record else None
        if not record or not isinstance(expires_at, datetime) or expires_at < datetime.utcnow():
            db.verification_codes.delete_one({"email": email})
            return invalid_code_response

        if not bcrypt.checkpw(otp.encode("utf-8"), record["otp_hash"]):
            failed_attempts = safe_positive_int(record.get("failed_attempts"), 0) + 1
            if failed_attempts >= MAX_FAILED_OTP_ATTEMPTS:
                db.verification_codes.delete_one({"_id": record["_id"]})
                return (
                    jsonify({"message": "Too many failed attempts. Please request a new code."}),
                    400,
                )
            db.verification_codes.update_one(
                {"_id": record["_id"]}, {"$set": {"failed_attempts": failed_attempts}}
            )
            return invalid_code_response

        db.verification_codes.delete_one({"_id": record["_id"]})
        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"is_verified": True, "verified_at": datetime.utcnow()}},
        )
        user = db.users.find_one({"_id": user["_id"]})

        return jsonify({"message": "Account verified.", **issue_tokens(user)})

    @app.route("/api/auth/resend-otp", methods=["POST"])
    def resend_verification_code():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        generic_message = {"message": "If this account needs verification, a new code has been sent."}

        user = db.users.find_one({"email": email}) if email else None
        if not user or user.get("is_verified"):
            return jsonify(generic_message), 200

        otp_result = dispatch_verification_code(user)
        if not otp_result.get("success"):
            return (
                jsonify(
                    {
                        "message": "We could not send a new verification code. Please try again.",
                        "error": otp_result.get("error"),
                    }
                ),
                502,
            )
        return jsonify(generic_message), 200

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            return jsonify({"message": "Invalid credentials"}), 401

        if email == default_admin_email and str(user.get("role", "")).strip().lower() != "admin":
            db.users.update_one(
                {"_id": user["_id"]},
                {"$set": {"role": "admin", "name": user.get("name") or DEFAULT_ADMIN_NAME}},
            )
        if user.get("is_verified") is False:
            return (
                jsonify(
                    {
                        "message": "Please verify your account before logging in.",
                        "requiresVerification": True,
                    }
                ),
                403,
            )

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )
        user = db.users.find_one({"_id": user["_id"]})

        return jsonify(issue_tokens(user))

    @app.route("/api/auth/refresh", methods=["POST"])
    @jwt_required(refresh=True)
    def refresh_access_token():
        current_user, auth_error = require_authenticated_user()
        if auth_error:
            return auth_error
        email = normalize_email(current_user.get("email"))
        return jsonify({"accessToken": create_access_token(identity=email)})

    @app.route("/api/auth/logout", methods=["POST"])
    @jwt_required(verify_type=False)
    def logout():
        token = get_jwt()
        expires_at = datetime.utcfromtimestamp(token["exp"]) if token.get("exp") else (
            datetime.utcnow() + app.config["JWT_REFRESH_TOKEN_EXPIRES"]
        )
        db.token_blocklist.update_one(
            {"jti": token["jti"]},
            {
                "$set": {
                    "jti": token["jti"],
                    "token_type": token.get("type", "access"),
                    "expires_at": expires_at,
                }
            },
            upsert=True,
        )
        return jsonify({"message": "Logged out successfully."})

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def get_me():
        current_user, auth_error = require_authenticated_user()
        if auth_error:
            return auth_error
        return jsonify({"user": serialize_user_profile(current_user)})

    @app.route("/api/auth/forgot-password", methods=["POST"])
    def forgot_password():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        generic_message = {
            "message": "If this email exists, a reset link has been sent."
        }

        if not email or not is_valid_email(email):
            return jsonify(generic_message), 200

        user = db.users.find_one({"email": email})
        if user:
            token = secrets.token_hex(32)
            db.users.update_one(
                {"_id": user["_id"]},
                {
                    "$set": {
                        "password_reset_token_hash": hash_reset_token(token),
                        "password_reset_expires_at": datetime.utcnow()
                        + timedelta(minutes=PASSWORD_RESET_EXPIRATION_MINUTES),
                    }
                },
            )
            sent, error_details = notifications.send_password_reset(
                user, token, PASSWORD_RESET_EXPIRATION_MINUTES
            )
            if not sent:
                app.logger.error(
                    "Password reset delivery failed for %s: %s",
                    email,
                    error_details or "Unknown delivery error",
                )

        return jsonify(generic_message), 200

    @app.route("/api/auth/reset-password", methods=["POST"])
    def reset_password():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        token = str(payload.get("token", "")).strip()
        new_password = str(
            payload.get("newPassword") or payload.get("new_password") or ""
        ).strip()
        invalid_token_response = (jsonify({"message": "Invalid or expired reset token."}), 400)

        if not email or not token or not new_password:
            return (
                jsonify({"message": "Email, reset token, and new password are required."}),
                400,
            )
        if len(new_password) < MIN_PASSWORD_LENGTH:
            return (
                jsonify(
                    {"message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters."}
                ),
                400,
            )

        user = db.users.find_one({"email": email})
        if not user:
            return invalid_token_response

        stored_hash = str(user.get("password_reset_token_hash") or "")
        expires_at = user.get("password_reset_expires_at")
        if not stored_hash or not hmac.compare_digest(stored_hash, hash_reset_token(token)):
            return invalid_token_response

        clear_reset_state = {
            "password_reset_token_hash": "",
            "password_reset_expires_at": "",
        }
        if not isinstance(expires_at, datetime) or expires_at < datetime.utcnow():
            db.users.update_one({"_id": user["_id"]}, {"$unset": clear_reset_state})
            return invalid_token_response

        hashed_pw = bcrypt.hashpw(new_password.encode("utf-8"), bcrypt.gensalt())
        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password": hashed_pw}, "$unset": clear_reset_state},
        )

        return jsonify({"message": "Password successfully reset"}), 200

    # Users (admin)
    @app.route("/api/users", methods=["GET"])
    @jwt_required()
    def list_users():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        users = [serialize_admin_user(user) for user in db.users.find().sort("created_at", -1)]
        return jsonify({"users": users})

    @app.route("/api/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def update_user_role(user_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        desired_role = str(payload.get("role", "")).strip().lower()
        if desired_role not in ALLOWED_USER_ROLES:
            return jsonify({"message": "Role must be 'admin' or 'user'."}), 400

        target_object_id = parse_object_id(user_id)
        if not target_object_id:
            return jsonify({"message": "Invalid user identifier."}), 400

        user_to_update = db.users.find_one({"_id": target_object_id})
        if not user_to_update:
            return jsonify({"message": "User not found."}), 404

        target_email = normalize_email(user_to_update.get("email"))
        if target_email == default_admin_email and desired_role != "admin":
            return (
                jsonify({"message": "The default administrator must remain an admin."}),
                400,
            )

        db.users.update_one({"_id": target_object_id}, {"$set": {"role": desired_role}})
        updated_user = db.users.find_one({"_id": target_object_id})

        app.logger.info(
            "%s changed the role of %s to %s",
            admin_user.get("email"),
            target_email,
            desired_role,
        )

        return jsonify(
            {
                "message": f"Role updated to {desired_role}.",
                "user": serialize_admin_user(updated_user),
            }
        )

    # Categories
    @app.route("/api/categories", methods=["GET"])
    def list_categories():
        query: Dict[str, object] = {"is_active": True}
        if parse_bool(request.args.get("includeInactive")):
            verify_jwt_in_request(optional=True)
            if get_user_role(get_current_user()) == "admin":
                query = {}

        category_documents = list(db.categories.find(query).sort("name", 1))
        product_counts = build_category_product_counts()
        categories = [
            serialize_category(document, product_counts=product_counts)
            for document in category_documents
        ]
        return jsonify({"categories": categories})

    @app.route("/api/categories", methods=["POST"])
    @jwt_required()
    def create_category():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        name_value = normalize_category_name(payload.get("name"))
        if len(name_value) < 2:
            return (
                jsonify({"message": "Please provide a category name with at least two characters."}),
                400,
            )

        slug = slugify(name_value)
        if db.categories.find_one({"slug": slug}):
            return jsonify({"message": "A category with this name already exists."}), 400

        timestamp = datetime.utcnow()
        category_document = {
            "name": name_value,
            "slug": slug,
            "description": str(payload.get("description", "") or "").strip(),
            "is_active": parse_bool(payload.get("isActive", payload.get("is_active")), True),
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            insert_result = db.categories.insert_one(category_document)
        except DuplicateKeyError:
            return jsonify({"message": "A category with this name already exists."}), 400
        category_document["_id"] = insert_result.inserted_id

        return (
            jsonify(
                {
                    "message": "Category created successfully.",
                    "category": serialize_category(category_document),
                }
            ),
            201,
        )

    @app.route("/api/categories/<category_id>", methods=["PUT"])
    @jwt_required()
    def update_category(category_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        category_object_id = parse_object_id(category_id)
        if not category_object_id:
            return jsonify({"message": "Invalid category identifier."}), 400

        category_document = db.categories.find_one({"_id": category_object_id})
        if not category_document:
            return jsonify({"message": "Category not found."}), 404

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {"updated_at": datetime.utcnow()}

        if "name" in payload:
            name_value = normalize_category_name(payload.get("name"))
            if len(name_value) < 2:
                return (
                    jsonify({"message": "Please provide a category name with at least two characters."}),
                    400,
                )
            slug = slugify(name_value)
            if db.categories.find_one({"slug": slug, "_id": {"$ne": category_object_id}}):
                return jsonify({"message": "A category with this name already exists."}), 400
            updates["name"] = name_value
            updates["slug"] = slug
        if "description" in payload:
            updates["description"] = str(payload.get("description") or "").strip()
        if "isActive" in payload or "is_active" in payload:
            updates["is_active"] = parse_bool(payload.get("isActive", payload.get("is_active")))

        db.categories.update_one({"_id": category_object_id}, {"$set": updates})
        updated_category = db.categories.find_one({"_id": category_object_id})

        return jsonify(
            {
                "message": "Category updated successfully.",
                "category": serialize_category(
                    updated_category, product_counts=build_category_product_counts()
                ),
            }
        )

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category(category_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        category_object_id = parse_object_id(category_id)
        if not category_object_id:
            return jsonify({"message": "Invalid category identifier."}), 400

        category_document = db.categories.find_one({"_id": category_object_id})
        if not category_document:
            return jsonify({"message": "Category not found."}), 404

        db.categories.delete_one({"_id": category_object_id})
        db.products.update_many(
            {"category_ids": category_object_id},
            {"$pull": {"category_ids": category_object_id}},
        )

        return jsonify(
            {
                "message": f'"{category_document.get("name", "Category")}" has been removed from the catalog.',
                "category": {"id": str(category_object_id)},
            }
        )

    # Settings
    @app.route("/api/settings", methods=["GET"])
    def get_settings():
        return jsonify({"settings": serialize_settings(get_store_settings())})

    @app.route("/api/settings", methods=["PUT"])
    @jwt_required()
    def update_settings():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        shipping_fee = safe_float(payload.get("shippingFee", payload.get("shipping_fee")), -1.0)
        if shipping_fee < 0:
            return jsonify({"message": "Shipping fee must be zero or a positive number."}), 400

        db.settings.update_one(
            {"_id": SETTINGS_ID},
            {"$set": {"shipping_fee": round(shipping_fee, 2), "updated_at": datetime.utcnow()}},
            upsert=True,
        )
        return jsonify(
            {
                "message": "Settings updated successfully.",
                "settings": serialize_settings(get_store_settings()),
            }
        )

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        query: Dict[str, object] = {}

        category_param = (request.args.get("category") or "").strip()
        if category_param:
            category_document = find_category(category_param)
            if not category_document:
                return jsonify({"products": []})
            query["category_ids"] = category_document["_id"]

        search_term = (request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"description": regex}]

        if parse_bool(request.args.get("inStock")):
            query["stock"] = {"$gt": 0}

        product_docs = list(db.products.find(query).sort("created_at", -1))
        return jsonify({"products": serialize_products(product_docs)})

    @app.route("/api/products/<product_identifier>", methods=["GET"])
    def get_product(product_identifier: str):
        product_document, load_error = fetch_product(product_identifier)
        if load_error:
            return load_error

        category_map = fetch_categories_by_ids(product_document.get("category_ids"))
        return jsonify({"product": serialize_product(product_document, category_map)})

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload, image_files = read_product_payload()

        name = str(payload.get("name", "")).strip()
        if not name:
            return jsonify({"message": "A product name is required."}), 400

        stock, stock_error = parse_stock(payload.get("stock"))
        if stock_error:
            return jsonify({"message": stock_error}), 400

        price_options, options_error = normalize_price_options(
            payload.get("priceOptions", payload.get("price_options"))
        )
        if options_error:
            return jsonify({"message": options_error}), 400

        category_ids, category_error = resolve_category_ids(
            payload.get("categories", payload.get("category_ids"))
        )
        if category_error:
            return jsonify({"message": category_error}), 400

        uploaded_images, image_error = save_product_images(image_files)
        if image_error:
            return jsonify({"message": image_error}), 400

        timestamp = datetime.utcnow()
        product_document = {
            "name": name,
            "slug": build_unique_slug(db.products, payload.get("slug") or name),
            "description": str(payload.get("description", "")).strip(),
            "stock": stock,
            "category_ids": category_ids,
            "images": normalize_image_list(payload.get("images")) + uploaded_images,
            "price_options": price_options,
            "ratings": 0.0,
            "num_of_reviews": 0,
            "created_at": timestamp,
            "updated_at": timestamp,
        }

        try:
            result = db.products.insert_one(product_document)
        except DuplicateKeyError:
            remove_product_images(uploaded_images)
            return jsonify({"message": "A product with this slug already exists."}), 400

        created_product = db.products.find_one({"_id": result.inserted_id})
        category_map = fetch_categories_by_ids(category_ids)

        return (
            jsonify(
                {
                    "message": "Product added successfully.",
                    "product": serialize_product(created_product, category_map),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_object_id = parse_object_id(product_id)
        if not product_object_id:
            return jsonify({"message": "Invalid product identifier."}), 400
        product_document = db.products.find_one({"_id": product_object_id})
        if not product_document:
            return jsonify({"message": "Product not found."}), 404

        payload, image_files = read_product_payload()
        updates: Dict[str, object] = {"updated_at": datetime.utcnow()}

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                return jsonify({"message": "A product name is required."}), 400
            updates["name"] = name
            if name != product_document.get("name"):
                updates["slug"] = build_unique_slug(
                    db.products, name, exclude_id=product_object_id
                )
        if "description" in payload:
            updates["description"] = str(payload.get("description") or "").strip()
        if "stock" in payload:
            stock, stock_error = parse_stock(payload.get("stock"))
            if stock_error:
                return jsonify({"message": stock_error}), 400
            updates["stock"] = stock
        if "priceOptions" in payload or "price_options" in payload:
            price_options, options_error = normalize_price_options(
                payload.get("priceOptions", payload.get("price_options")),
                existing_options=product_document.get("price_options"),
            )
            if options_error:
                return jsonify({"message": options_error}), 400
            updates["price_options"] = price_options
        if "categories" in payload or "category_ids" in payload:
            category_ids, category_error = resolve_category_ids(
                payload.get("categories", payload.get("category_ids"))
            )
            if category_error:
                return jsonify({"message": category_error}), 400
            updates["category_ids"] = category_ids

        existing_images = product_document.get("images") or []
        if "images" in payload:
            kept_images = normalize_image_list(payload.get("images"))
        elif "retainedImages" in payload:
            retained_ids = {str(value) for value in parse_json_list(payload.get("retainedImages"))}
            kept_images = [
                image for image in existing_images if image.get("public_id") in retained_ids
            ]
        else:
            kept_images = list(existing_images)

        uploaded_images, image_error = save_product_images(image_files)
        if image_error:
            return jsonify({"message": image_error}), 400

        kept_public_ids = {image.get("public_id") for image in kept_images}
        removed_images = [
            image
            for image in existing_images
            if image.get("public_id") and image.get("public_id") not in kept_public_ids
        ]
        updates["images"] = kept_images + uploaded_images

        db.products.update_one({"_id": product_object_id}, {"$set": updates})
        remove_product_images(removed_images)

        updated_product = db.products.find_one({"_id": product_object_id})
        category_map = fetch_categories_by_ids(updated_product.get("category_ids"))
        return jsonify(
            {
                "message": "Product updated successfully.",
                "product": serialize_product(updated_product, category_map),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_object_id = parse_object_id(product_id)
        if not product_object_id:
            return jsonify({"message": "Invalid product identifier."}), 400
        product_document = db.products.find_one({"_id": product_object_id})
        if not product_document:
            return jsonify({"message": "Product not found."}), 404

        db.products.delete_one({"_id": product_object_id})
        db.coupons.update_many(
            {"eligible_products": product_object_id},
            {"$pull": {"eligible_products": product_object_id}},
        )
        remove_product_images(product_document.get("images"))

        return jsonify(
            {
                "message": f'"{product_document.get("name", "Product")}" has been deleted.',
                "product": {"id": str(product_object_id)},
            }
        )

    # Coupons
    @app.route("/api/coupons/all", methods=["GET"])
    @jwt_required()
    def list_coupons():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify({"coupons": list_serialized_coupons()})

    @app.route("/api/coupons", methods=["POST"])
    @jwt_required()
    def create_coupon():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        fields, coupon_error = normalize_coupon_payload(payload)
        if coupon_error:
            return jsonify({"message": coupon_error}), 400

        if db.coupons.find_one({"code": fields["code"]}):
            return jsonify({"message": "A coupon with this code already exists."}), 400

        timestamp = datetime.utcnow()
        coupon_document = {
            **fields,
            "used_coupons": 0,
            "used_by": [],
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            db.coupons.insert_one(coupon_document)
        except DuplicateKeyError:
            return jsonify({"message": "A coupon with this code already exists."}), 400

        app.logger.info("%s created coupon %s", admin_user.get("email"), fields["code"])

        return (
            jsonify({"message": "Coupon added successfully", "coupons": list_serialized_coupons()}),
            201,
        )

    @app.route("/api/coupons/<code>", methods=["PUT"])
    @jwt_required()
    def update_coupon(code: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        coupon_document = db.coupons.find_one({"code": normalize_coupon_code(code)})
        if not coupon_document:
            return jsonify({"message": "Coupon not found."}), 404

        payload = request.get_json(silent=True) or {}
        fields, coupon_error = normalize_coupon_payload(payload, existing=coupon_document)
        if coupon_error:
            return jsonify({"message": coupon_error}), 400

        fields["updated_at"] = datetime.utcnow()
        db.coupons.update_one({"_id": coupon_document["_id"]}, {"$set": fields})

        return jsonify({"message": "Coupon updated successfully", "coupons": list_serialized_coupons()})

    @app.route("/api/coupons/<code>", methods=["DELETE"])
    @jwt_required()
    def delete_coupon(code: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        result = db.coupons.delete_one({"code": normalize_coupon_code(code)})
        if not result.deleted_count:
            return jsonify({"message": "Coupon not found."}), 404

        return jsonify({"message": "Coupon deleted successfully", "coupons": list_serialized_coupons()})

    @app.route("/api/coupons/validate", methods=["POST"])
    @jwt_required()
    def validate_coupon_for_cart():
        current_user, auth_error = require_authenticated_user()
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        code = normalize_coupon_code(payload.get("code") or payload.get("couponCode"))
        if not code:
            return jsonify({"message": "Please enter a coupon code."}), 400

        try:
            order_items, subtotal = resolve_order_items(payload.get("items"))
        except OrderError as exc:
            return jsonify({"message": exc.message}), exc.status_code

        shipping_cost = round(safe_float(get_store_settings().get("shipping_fee"), 0.0), 2)
        coupon_document = db.coupons.find_one({"code": code})
        reason = coupon_rejection_reason(
            coupon_document,
            current_user["_id"],
            subtotal,
            [item["product"] for item in order_items],
        )
        discount = 0.0 if reason else calculate_discount(coupon_document, subtotal)

        return jsonify(
            {
                "valid": reason is None,
                "message": reason or "Coupon applied!",
                "code": code,
                "subtotal": subtotal,
                "shippingCost": shipping_cost,
                "discount": discount,
                "total": calculate_order_total(subtotal, shipping_cost, discount),
            }
        )

    # Orders
    @app.route("/api/orders", methods=["POST"])
    def create_order():
        verify_jwt_in_request(optional=True)
        current_user = get_current_user()

        payload = request.get_json(silent=True) or {}
        shipping_address, missing_fields = normalize_shipping_address(
            payload.get("shippingAddress") or payload.get("shipping_address")
        )
        if missing_fields:
            return (
                jsonify({"message": f"Missing shipping fields: {', '.join(missing_fields)}"}),
                400,
            )

        payment_method = normalize_payment_method(
            payload.get("paymentMethod") or payload.get("payment_method")
        )
        if not payment_method:
            return jsonify({"message": "Payment method must be 'COD' or 'PayFast'."}), 400

        shipping_cost = round(safe_float(get_store_settings().get("shipping_fee"), 0.0), 2)
        coupon_code = normalize_coupon_code(
            payload.get("couponCode") or payload.get("coupon_code")
        )

        coupon_document = None
        try:
            order_items, subtotal = resolve_order_items(payload.get("items"))
            if coupon_code:
                if not current_user:
                    raise OrderError("Authentication required for coupon use", 401)
                coupon_document = db.coupons.find_one({"code": coupon_code})
                if not coupon_document:
                    raise CouponError("Invalid coupon code", 400)
                validate_coupon(
                    coupon_document,
                    current_user["_id"],
                    subtotal,
                    [item["product"] for item in order_items],
                )
        except OrderError as exc:
            return jsonify({"message": exc.message}), exc.status_code

        discount = calculate_discount(coupon_document, subtotal)
        total_amount = calculate_order_total(subtotal, shipping_cost, discount)
        timestamp = datetime.utcnow()
        order_object_id = ObjectId()

        order_document = {
            "_id": order_object_id,
            "user": current_user["_id"] if current_user else None,
            "items": order_items,
            "subtotal": subtotal,
            "shipping_cost": shipping_cost,
            "discount": discount,
            "total_amount": total_amount,
            "shipping_address": shipping_address,
            "payment_method": payment_method,
            "coupon_used": coupon_document["_id"] if coupon_document else None,
            "status": "Processing",
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        if payment_method == "PayFast":
            order_document["payment_result"] = payfast.build_payment_request(
                order_object_id, total_amount, app.config["PAYFAST"]
            )

        try:
            place_order(order_document, coupon_document, current_user)
        except OrderError as exc:
            return jsonify({"message": exc.message}), exc.status_code
        except Exception as exc:
            app.logger.error("Order creation failed: %s", exc)
            return jsonify({"message": "We could not place your order. Please try again."}), 500

        app.logger.info(
            "Order %s placed (%s, total %.2f)", order_object_id, payment_method, total_amount
        )
        notifications.send_order_confirmation(order_document, current_user)

        return (
            jsonify(
                {
                    "message": "Order created successfully",
                    "order": serialize_order(order_document),
                }
            ),
            201,
        )

    @app.route("/api/orders/my", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user, auth_error = require_authenticated_user()
        if auth_error:
            return auth_error

        cursor = db.orders.find({"user": current_user["_id"]}).sort([("created_at", -1), ("_id", -1)])
        orders = [serialize_order(document, populate=True) for document in cursor]
        return jsonify({"orders": orders})

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page = max(safe_positive_int(request.args.get("page"), 1), 1)
        limit = min(safe_positive_int(request.args.get("limit"), 0) or 20, 100)
        status_filter = str(request.args.get("status") or "").strip().lower()

        query: Dict[str, object] = {}
        if status_filter:
            query["status"] = status_filter.capitalize()

        total = db.orders.count_documents(query)
        cursor = (
            db.orders.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [serialize_order(document, populate=True) for document in cursor]

        return jsonify(
            {
                "orders": orders,
                "totalPages": math.ceil(total / limit) if total else 0,
                "currentPage": page,
                "total": total,
            }
        )

    @app.route("/api/orders/stats", methods=["GET"])
    @jwt_required()
    def get_sales_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        start_date = parse_iso_date(request.args.get("startDate"))
        end_param = str(request.args.get("endDate") or "").strip()
        end_date = parse_iso_date(end_param, end_of_day=True)
        # A date-only end bound becomes the next midnight, which is excluded.
        end_operator = "$lt" if re.fullmatch(r"\d{4}-\d{2}-\d{2}", end_param) else "$lte"
        period = request.args.get("period")

        match_stage: Dict[str, object] = {}
        if start_date and end_date:
            match_stage["created_at"] = {"$gte": start_date, end_operator: end_date}
        elif period:
            match_stage["created_at"] = stats_date_range(period)

        stats = list(
            db.orders.aggregate(
                [
                    {"$match": match_stage},
                    {
                        "$group": {
                            "_id": None,
                            "totalOrders": {"$sum": 1},
                            "totalSales": {"$sum": "$subtotal"},
                            "totalShipping": {"$sum": "$shipping_cost"},
                            "totalDiscount": {"$sum": "$discount"},
                            "totalRevenue": {"$sum": "$total_amount"},
                        }
                    },
                ]
            )
        )

        result = {
            "totalOrders": 0,
            "totalSales": 0.0,
            "totalShipping": 0.0,
            "totalDiscount": 0.0,
            "totalRevenue": 0.0,
        }
        if stats:
            for key in result:
                value = stats[0].get(key, 0) or 0
                result[key] = value if key == "totalOrders" else round(safe_float(value), 2)
        result["couponsUsed"] = db.orders.count_documents(
            {**match_stage, "coupon_used": {"$ne": None}}
        )

        return jsonify({"stats": result})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        current_user, auth_error = require_authenticated_user()
        if auth_error:
            return auth_error

        order_object_id = parse_object_id(order_id)
        if not order_object_id:
            return jsonify({"message": "Invalid order identifier."}), 400

        order_document = db.orders.find_one({"_id": order_object_id})
        if not order_document:
            return jsonify({"message": "Order not found"}), 404
        if not can_access_order(order_document, current_user):
            return jsonify({"message": "Unauthorized"}), 403

        return jsonify({"order": serialize_order(order_document, populate=True)})

    @app.route("/api/orders/<order_id>/status", methods=["PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        status = payload.get("status")
        tracking_id = payload.get("trackingId", payload.get("tracking_id"))

        if not isinstance(status, str):
            return jsonify({"message": "Status is required and must be a string"}), 400

        normalized_status = status.strip().lower()
        if normalized_status not in ORDER_STATUSES:
            return jsonify({"message": "Invalid status value"}), 400

        if normalized_status == "shipped" and (
            not isinstance(tracking_id, str) or not tracking_id.strip()
        ):
            return jsonify({"message": "Tracking ID is required for shipped orders"}), 400

        order_object_id = parse_object_id(order_id)
        if not order_object_id:
            return jsonify({"message": "Invalid order identifier."}), 400

        formatted_status = normalized_status.capitalize()
        updates: Dict[str, object] = {
            "status": formatted_status,
            "updated_at": datetime.utcnow(),
        }
        if isinstance(tracking_id, str) and tracking_id.strip():
            updates["tracking_id"] = tracking_id.strip()

        order_document = db.orders.find_one_and_update(
            {"_id": order_object_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not order_document:
            return jsonify({"message": "Order not found"}), 404

        if formatted_status in RESTOCK_STATUSES:
            restock_order_once(order_document)

        app.logger.info(
            "%s moved order %s to %s", admin_user.get("email"), order_object_id, formatted_status
        )
        notifications.send_status_notification(
            order_document, formatted_status, find_order_owner(order_document)
        )

        return jsonify(
            {
                "message": "Order status updated",
                "order": serialize_order(order_document, populate=True),
            }
        )

    @app.route("/api/orders/payfast/notify", methods=["POST"])
    def handle_payfast_notification():
        data = request.form.to_dict() if request.form else {}
        if not data:
            data = {
                str(key): value for key, value in (request.get_json(silent=True) or {}).items()
            }
        signature = data.pop("signature", None)

        if not payfast.verify_signature(data, signature, app.config["PAYFAST"].get("passphrase")):
            app.logger.warning("Rejected PayFast notification with an invalid signature")
            return "Invalid signature", 400

        order_object_id = parse_object_id(data.get("m_payment_id"))
        order_document = db.orders.find_one({"_id": order_object_id}) if order_object_id else None
        if not order_document:
            return "Order not found", 404

        timestamp = datetime.utcnow()
        updates: Dict[str, object] = {
            "payment_result": {
                "id": data.get("pf_payment_id"),
                "status": data.get("payment_status"),
                "update_time": format_datetime(timestamp),
                "raw_data": data,
            },
            "updated_at": timestamp,
        }
        new_status = payfast.order_status_for_payment(data.get("payment_status"))
        # Closed orders already returned their stock; a late payment must not reopen them.
        order_closed = (
            order_document.get("status") in RESTOCK_STATUSES
            or bool(order_document.get("stock_restored"))
        )
        if new_status and order_closed:
            app.logger.warning(
                "PayFast %s for closed order %s (%s); status left unchanged",
                data.get("payment_status"),
                order_object_id,
                order_document.get("status"),
            )
            new_status = None
        if new_status:
            updates["status"] = new_status

        db.orders.update_one({"_id": order_object_id}, {"$set": updates})
        if new_status in RESTOCK_STATUSES:
            restock_order_once(order_document)

        app.logger.info(
            "PayFast notification for order %s: %s", order_object_id, data.get("payment_status")
        )
        return "", 200

    return app


def normalize_email_value(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
