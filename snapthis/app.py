import hmac
import os
import re
import tempfile
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urljoin

import bcrypt
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    unset_jwt_cookies,
)
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from snapthis.emails import DEFAULT_SENDER, send_guest_page_email
from snapthis.payments import (
    COMPLETION_EVENTS,
    PaymentConfigurationError,
    PaymentProviderError,
    StripeCheckout,
    WebhookVerificationError,
    customer_email_from_session,
    guest_token_from_session,
    paid_fields_from_session,
)
from snapthis.storage import (
    ALLOWED_PHOTO_EXTENSIONS,
    LocalPhotoStorage,
    PhotoStorage,
    SupabaseBucket,
    allowed_photo,
    build_photo_filename,
    short_id,
)
from snapthis.store import GuestStore, MemoryStore, MongoStore, utc_timestamp

load_dotenv()

DEFAULT_CONTACT_EMAIL = "kontakt@snapthis.pl"
DEFAULT_SESSION_SECRET = "snapthis-secret"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def load_config_from_env() -> Dict[str, object]:
    serverless = bool(os.getenv("VERCEL"))
    return {
        "MONGO_URI": (os.getenv("MONGO_URI") or "").strip() or None,
        "SUPABASE_URL": (
            os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or ""
        ).strip(),
        "SUPABASE_SERVICE_ROLE_KEY": (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip(),
        "SUPABASE_BUCKET": (os.getenv("SUPABASE_BUCKET") or "").strip(),
        "STRIPE_SECRET_KEY": (os.getenv("STRIPE_SECRET_KEY") or "").strip(),
        "STRIPE_PUBLISHABLE_KEY": (os.getenv("STRIPE_PUBLISHABLE_KEY") or "").strip(),
        "STRIPE_WEBHOOK_SECRET": (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
        "STRIPE_CURRENCY": (os.getenv("STRIPE_CURRENCY") or "pln").strip().lower(),
        "ADMIN_USER": os.getenv("ADMIN_USER") or "",
        "ADMIN_PASS": os.getenv("ADMIN_PASS") or "",
        "ADMIN_PASS_HASH": os.getenv("ADMIN_PASS_HASH") or "",
        "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY")
        or os.getenv("SESSION_SECRET")
        or DEFAULT_SESSION_SECRET,
        "ADMIN_SESSION_HOURS": env_int("ADMIN_SESSION_HOURS", 24),
        "SERVERLESS": serverless,
        "UPLOAD_FOLDER": (os.getenv("UPLOAD_FOLDER") or "").strip() or None,
        "MAX_UPLOAD_SIZE_MB": env_int("MAX_UPLOAD_SIZE_MB", 5),
        "CONTACT_EMAIL": os.getenv("CONTACT_EMAIL") or DEFAULT_CONTACT_EMAIL,
        "RESEND_API_KEY": (os.getenv("RESEND_API_KEY") or "").strip(),
        "GUEST_EMAIL_SENDER": os.getenv("GUEST_EMAIL_SENDER") or DEFAULT_SENDER,
        "PUBLIC_BASE_URL": (os.getenv("PUBLIC_BASE_URL") or "").strip(),
        "TRUSTED_PROXY_HOPS": max(0, env_int("TRUSTED_PROXY_HOPS", 1)),
        "CORS_ALLOWED_ORIGINS": os.getenv("CORS_ALLOWED_ORIGINS", ""),
        "REQUIRE_PAYMENT_FOR_UPLOADS": env_flag("REQUIRE_PAYMENT_FOR_UPLOADS"),
    }


def create_app(config_overrides: Optional[Dict[str, object]] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.update(load_config_from_env())
    if config_overrides:
        app.config.update(config_overrides)

    # Honor proxy headers so generated guest links keep the public HTTPS origin.
    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["MAX_CONTENT_LENGTH"] = int(app.config["MAX_UPLOAD_SIZE_MB"]) * 1024 * 1024
    app.config["JWT_TOKEN_LOCATION"] = ["headers", "cookies"]
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=int(app.config["ADMIN_SESSION_HOURS"])
    )
    app.config["JWT_COOKIE_SECURE"] = bool(app.config["SERVERLESS"])
    app.config["JWT_COOKIE_SAMESITE"] = "Lax"

    upload_directory = app.config.get("UPLOAD_FOLDER")
    if not upload_directory:
        if app.config["SERVERLESS"]:
            upload_directory = os.path.join(tempfile.gettempdir(), "snapthis-uploads")
        else:
            upload_directory = os.path.join(app.root_path, "uploads")
    app.config["UPLOAD_FOLDER"] = upload_directory

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5000",
        app.config["PUBLIC_BASE_URL"],
    ]
    for origin in str(app.config["CORS_ALLOWED_ORIGINS"] or "").split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    managed_store = None
    if app.config.get("MONGO_URI"):
        mongo = PyMongo(app, serverSelectionTimeoutMS=5000)
        if mongo.db is None:
            app.logger.warning(
                "MONGO_URI has no database name; guest pages stay in memory."
            )
        else:
            managed_store = MongoStore(mongo.db)
            try:
                managed_store.ensure_indexes()
            except PyMongoError as exc:
                app.logger.warning("Unable to ensure indexes for guest pages: %s", exc)

    store = GuestStore(managed_store, MemoryStore(), app.logger)

    bucket = None
    if app.config["SUPABASE_URL"] and app.config["SUPABASE_BUCKET"]:
        bucket = SupabaseBucket(
            app.config["SUPABASE_URL"],
            app.config["SUPABASE_SERVICE_ROLE_KEY"],
            app.config["SUPABASE_BUCKET"],
        )
    photos = PhotoStorage(LocalPhotoStorage(upload_directory), bucket, app.logger)

    checkout = StripeCheckout(
        app.config["STRIPE_SECRET_KEY"],
        app.config["STRIPE_WEBHOOK_SECRET"],
        app.config["STRIPE_CURRENCY"],
    )

    admin_password_hash = (app.config.get("ADMIN_PASS_HASH") or "").encode("utf-8")
    if not admin_password_hash and app.config.get("ADMIN_PASS"):
        admin_password_hash = bcrypt.hashpw(
            str(app.config["ADMIN_PASS"]).encode("utf-8"), bcrypt.gensalt()
        )

    app.extensions["snapthis"] = {
        "store": store,
        "photos": photos,
        "checkout": checkout,
    }

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def read_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        return payload if isinstance(payload, dict) else {}

    def public_base_url() -> str:
        configured = app.config.get("PUBLIC_BASE_URL")
        base = configured or request.host_url
        return base if base.endswith("/") else f"{base}/"

    def absolute_url(path: str) -> str:
        return urljoin(public_base_url(), path.lstrip("/"))

    def local_upload_base() -> str:
        return app.config.get("PUBLIC_BASE_URL") or ""

    def not_found():
        return jsonify({"error": "Not found"}), 404

    def new_guest_token() -> str:
        token = short_id(10)
        while store.get_guest_page(token):
            token = short_id(10)
        return token

    def build_guest_page(product_id: str, payload: Dict) -> Dict:
        title = str(payload.get("title") or "").strip() or f"{product_id} Event"
        buyer_email = normalize_email(
            payload.get("buyerEmail") or payload.get("buyer_email")
        )
        return {
            "id": new_guest_token(),
            "product_id": product_id,
            "title": title,
            "buyer_email": buyer_email,
            "created_at": utc_timestamp(),
            "paid": False,
        }

    def verify_admin_credentials(username: str, password: str) -> bool:
        configured_user = str(app.config.get("ADMIN_USER") or "")
        if not configured_user or not admin_password_hash:
            return False
        if not hmac.compare_digest(username.encode("utf-8"), configured_user.encode("utf-8")):
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), admin_password_hash)
        except ValueError:
            app.logger.error("ADMIN_PASS_HASH is not a valid bcrypt hash.")
            return False

    def deliver_guest_link(page: Dict):
        recipient = normalize_email(page.get("buyer_email"))
        if not recipient:
            return
        sent, error_details = send_guest_page_email(
            recipient,
            page,
            absolute_url(f"guest/{page['id']}"),
            app.config.get("RESEND_API_KEY"),
            sender=app.config.get("GUEST_EMAIL_SENDER"),
            contact_email=app.config.get("CONTACT_EMAIL", ""),
        )
        if not sent:
            app.logger.warning(
                "Guest page email for %s was not sent: %s", page.get("id"), error_details
            )

    # --- Error handlers ---

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(exc):
        limit = app.config["MAX_UPLOAD_SIZE_MB"]
        return jsonify({"error": f"File is too large. The limit is {limit} MB."}), 413

    @jwt.unauthorized_loader
    def handle_missing_admin_token(reason):
        return jsonify({"error": "Login required.", "login": "/admin/login"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_admin_token(reason):
        return jsonify({"error": "Login required.", "login": "/admin/login"}), 401

    @jwt.expired_token_loader
    def handle_expired_admin_token(jwt_header, jwt_payload):
        return jsonify({"error": "Session expired.", "login": "/admin/login"}), 401

    # --- ROUTES ---

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/", methods=["GET"])
    @app.route("/api/products", methods=["GET"])
    def list_products():
        return jsonify(
            {
                "products": store.list_products(),
                "contact_email": app.config["CONTACT_EMAIL"],
            }
        )

    @app.route("/product/<product_id>", methods=["GET"])
    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product = store.get_product(product_id)
        if not product:
            return not_found()
        return jsonify({"product": product})

    @app.route("/buy/<product_id>", methods=["GET"])
    def buy_form(product_id: str):
        product = store.get_product(product_id)
        if not product:
            return not_found()
        return jsonify(
            {
                "product": product,
                "error": None,
                "checkout": {
                    "enabled": checkout.enabled,
                    "publishable_key": app.config["STRIPE_PUBLISHABLE_KEY"],
                    "action": "/create-checkout-session",
                    "fallback_action": f"/buy/{product_id}/create",
                },
            }
        )

    @app.route("/buy/<product_id>/create", methods=["POST"])
    def create_guest_page(product_id: str):
        product = store.get_product(product_id)
        if not product:
            return not_found()

        payload = read_payload()
        page = build_guest_page(product_id, payload)
        if page["buyer_email"] and not is_valid_email(page["buyer_email"]):
            return jsonify({"error": "Please provide a valid email address."}), 400

        store.create_guest_page(page)
        app.logger.info("Created guest page %s for product %s", page["id"], product_id)
        return (
            jsonify(
                {
                    "guest_page": page,
                    "url": f"/guest/{page['id']}",
                    "share_url": absolute_url(f"guest/{page['id']}"),
                }
            ),
            201,
        )

    @app.route("/guest/<token>", methods=["GET"])
    def get_guest_page(token: str):
        page = store.get_guest_page(token)
        if not page:
            return not_found()

        uploads = [
            photos.normalize_upload(upload, local_upload_base())
            for upload in store.list_uploads(token)
        ]
        return jsonify({"guest_page": page, "uploads": uploads})

    @app.route("/guest/<token>/upload", methods=["POST"])
    def upload_guest_photo(token: str):
        page = store.get_guest_page(token)
        if not page:
            return not_found()

        if app.config.get("REQUIRE_PAYMENT_FOR_UPLOADS") and not page.get("paid"):
            return jsonify({"error": "This guest page has not been paid for yet."}), 402

        photo = request.files.get("photo")
        if not photo or not getattr(photo, "filename", ""):
            return jsonify({"error": "A photo file is required."}), 400

        if not allowed_photo(photo.filename):
            allowed = ", ".join(sorted(ext.upper() for ext in ALLOWED_PHOTO_EXTENSIONS))
            return jsonify({"error": f"Unsupported image format. Upload {allowed} files."}), 400

        filename = build_photo_filename(photo.filename)
        try:
            _, public_url = photos.store(photo, filename)
        except OSError as exc:
            app.logger.error("Unable to store photo %s: %s", filename, exc)
            return jsonify({"error": "We could not store the uploaded photo. Please try again."}), 500

        record = {
            "id": short_id(),
            "token": token,
            "filename": filename,
            "original_name": photo.filename,
            "content_type": photo.mimetype,
            "created_at": utc_timestamp(),
        }
        if public_url:
            record["url"] = public_url

        store.add_upload(record)
        return jsonify({"upload": photos.normalize_upload(record, local_upload_base())}), 201

    @app.route("/create-checkout-session", methods=["POST"])
    def create_checkout_session():
        if not checkout.enabled:
            return jsonify({"error": "Online payments are not available."}), 503

        payload = read_payload()
        product_id = str(payload.get("productId") or payload.get("product_id") or "").strip()
        product = store.get_product(product_id) if product_id else None
        if not product:
            return not_found()

        page = build_guest_page(product_id, payload)
        if page["buyer_email"] and not is_valid_email(page["buyer_email"]):
            return jsonify({"error": "Please provide a valid email address."}), 400
        store.create_guest_page(page)

        try:
            session = checkout.create_session(
                product,
                page["id"],
                success_url=absolute_url(f"guest/{page['id']}?paid=1"),
                cancel_url=absolute_url(f"buy/{product_id}"),
                customer_email=page["buyer_email"] or None,
                title=page["title"],
            )
        except PaymentConfigurationError as exc:
            return jsonify({"error": str(exc)}), 503
        except ValueError as exc:
            app.logger.error("Product %s has an unusable price: %s", product_id, exc)
            return jsonify({"error": "This product cannot be purchased right now."}), 500
        except PaymentProviderError as exc:
            app.logger.error("Stripe checkout creation failed for %s: %s", page["id"], exc)
            return jsonify({"error": "Failed to create payment session."}), 502

        store.update_guest_page(page["id"], {"checkout_session_id": session["id"]})
        app.logger.info(
            "Created Stripe checkout %s for guest page %s", session["id"], page["id"]
        )
        return jsonify({"sessionId": session["id"], "url": session["url"], "token": page["id"]})

    @app.route("/webhook", methods=["POST"])
    def stripe_webhook():
        if not checkout.webhook_secret:
            app.logger.warning(
                "Stripe webhook received without STRIPE_WEBHOOK_SECRET; payload is unverified."
            )
        try:
            event = checkout.parse_event(
                request.get_data(), request.headers.get("Stripe-Signature")
            )
        except WebhookVerificationError as exc:
            app.logger.warning("Stripe webhook rejected: %s", exc)
            return jsonify({"error": str(exc)}), 400

        event_type = event.get("type")
        if event_type not in COMPLETION_EVENTS:
            return jsonify({"status": "ignored"}), 200

        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            app.logger.warning("Stripe webhook: %s event has no session object", event_type)
            return jsonify({"error": "Invalid webhook payload."}), 400

        token = guest_token_from_session(session)
        if not token:
            app.logger.warning("Stripe webhook: session %s has no guest token", session.get("id"))
            return jsonify({"status": "ignored"}), 200

        payment_status = session.get("payment_status")
        if payment_status not in ("paid", "no_payment_required"):
            app.logger.info(
                "Stripe webhook: session %s for %s is %s, not paid",
                session.get("id"),
                token,
                payment_status,
            )
            return jsonify({"status": "ignored", "details": payment_status}), 200

        page = store.get_guest_page(token)
        if not page:
            app.logger.warning("Stripe webhook: guest page %s not found", token)
            return jsonify({"error": "Guest page not found"}), 404

        if page.get("paid"):
            app.logger.info("Stripe webhook: guest page %s already paid", token)
            return jsonify({"status": "already_paid"}), 200

        fields = paid_fields_from_session(session)
        if not page.get("buyer_email"):
            session_email = customer_email_from_session(session)
            if session_email:
                fields["buyer_email"] = session_email

        updated_page = store.mark_guest_page_paid(token, fields)
        if not updated_page:
            app.logger.error("Stripe webhook: could not record payment for guest page %s", token)
            return jsonify({"error": "Unable to record payment"}), 503
        app.logger.info("Stripe webhook: guest page %s marked paid", token)

        deliver_guest_link(updated_page)
        return jsonify({"status": "ok"}), 200

    # Admin
    @app.route("/admin/login", methods=["GET"])
    def admin_login_form():
        return jsonify({"error": None})

    @app.route("/admin/login", methods=["POST"])
    def admin_login():
        payload = read_payload()
        username = str(payload.get("username") or "")
        password = str(payload.get("password") or "")

        if not verify_admin_credentials(username, password):
            app.logger.warning("Failed admin login attempt for %r", username)
            return jsonify({"error": "invalid"}), 401

        access_token = create_access_token(identity=username)
        response = jsonify({"message": "Logged in.", "access_token": access_token})
        set_access_cookies(response, access_token)
        return response

    @app.route("/admin/logout", methods=["GET"])
    def admin_logout():
        response = jsonify({"message": "Logged out.", "login": "/admin/login"})
        unset_jwt_cookies(response)
        return response

    @app.route("/admin", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        guest_pages = []
        total_uploads = 0
        for page in store.list_guest_pages():
            upload_count = len(store.list_uploads(page["id"]))
            total_uploads += upload_count
            guest_pages.append({**page, "upload_count": upload_count})

        return jsonify(
            {
                "admin": get_jwt_identity(),
                "products": store.list_products(),
                "guest_pages": guest_pages,
                "stats": {
                    "guest_pages": len(guest_pages),
                    "paid": sum(1 for page in guest_pages if page.get("paid")),
                    "uploads": total_uploads,
                },
            }
        )

    @app.route("/_health")
    @app.route("/health")
    def health():
        return {"status": "ok", "store": store.mode}, 200

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
