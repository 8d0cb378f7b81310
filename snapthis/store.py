import threading
from copy import deepcopy
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

DEFAULT_PRODUCTS = [
    {
        "id": "standard",
        "title": "Standard QR",
        "price": "0.99",
        "description": "QR only (download)",
    },
    {
        "id": "premium",
        "title": "Premium print",
        "price": "3.99",
        "description": "Printed and more",
    },
    {
        "id": "exclusive",
        "title": "Exclusive with shipping",
        "price": "9.99",
        "description": "Shipped to you",
    },
]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def strip_mongo_id(document: Optional[Dict]) -> Optional[Dict]:
    if not document:
        return None
    return {key: value for key, value in document.items() if key != "_id"}


def merge_by_id(*groups: List[Dict]) -> List[Dict]:
    """Merge record lists keyed by ``id``; earlier groups win."""
    merged: Dict[str, Dict] = {}
    for group in groups:
        for record in group or []:
            identifier = str(record.get("id") or "")
            if identifier and identifier not in merged:
                merged[identifier] = record
    return list(merged.values())


class MemoryStore:
    """Process-local records used when the managed store is absent or failing."""

    def __init__(self, products: Optional[List[Dict]] = None):
        self._lock = threading.Lock()
        self.products: List[Dict] = deepcopy(
            DEFAULT_PRODUCTS if products is None else products
        )
        self.guest_pages: List[Dict] = []
        self.guest_uploads: List[Dict] = []

    def list_products(self) -> List[Dict]:
        with self._lock:
            return deepcopy(self.products)

    def get_product(self, product_id: str) -> Optional[Dict]:
        with self._lock:
            for product in self.products:
                if product.get("id") == product_id:
                    return dict(product)
        return None

    def insert_guest_page(self, record: Dict) -> Dict:
        with self._lock:
            self.guest_pages.append(dict(record))
        return record

    def get_guest_page(self, token: str) -> Optional[Dict]:
        with self._lock:
            for page in self.guest_pages:
                if page.get("id") == token:
                    return dict(page)
        return None

    def update_guest_page(self, token: str, fields: Dict) -> Optional[Dict]:
        with self._lock:
            for page in self.guest_pages:
                if page.get("id") == token:
                    page.update(fields)
                    return dict(page)
        return None

    def list_guest_pages(self) -> List[Dict]:
        with self._lock:
            return [dict(page) for page in self.guest_pages]

    def insert_upload(self, record: Dict) -> Dict:
        with self._lock:
            self.guest_uploads.append(dict(record))
        return record

    def list_uploads(self, token: str) -> List[Dict]:
        with self._lock:
            return [
                dict(upload)
                for upload in self.guest_uploads
                if upload.get("token") == token
            ]


class MongoStore:
    """Records kept in MongoDB: ``products``, ``guest_pages``, ``guest_uploads``."""

    def __init__(self, db, seed_products: Optional[List[Dict]] = None):
        self.db = db
        self.seed_products = deepcopy(
            DEFAULT_PRODUCTS if seed_products is None else seed_products
        )

    def ensure_indexes(self):
        self.db.guest_pages.create_index("id", unique=True)
        self.db.guest_uploads.create_index([("token", 1), ("created_at", 1)])

    def ensure_seed_products(self):
        if self.db.products.count_documents({}) > 0:
            return
        documents = [dict(product) for product in self.seed_products]
        if documents:
            self.db.products.insert_many(documents)

    def list_products(self) -> List[Dict]:
        self.ensure_seed_products()
        return [strip_mongo_id(doc) for doc in self.db.products.find()]

    def get_product(self, product_id: str) -> Optional[Dict]:
        return strip_mongo_id(self.db.products.find_one({"id": product_id}))

    def insert_guest_page(self, record: Dict) -> Dict:
        # insert_one adds _id to the dict it is given
        self.db.guest_pages.insert_one(dict(record))
        return record

    def get_guest_page(self, token: str) -> Optional[Dict]:
        return strip_mongo_id(self.db.guest_pages.find_one({"id": token}))

    def update_guest_page(self, token: str, fields: Dict) -> Optional[Dict]:
        result = self.db.guest_pages.update_one({"id": token}, {"$set": fields})
        if not result.matched_count:
            return None
        return self.get_guest_page(token)

    def list_guest_pages(self) -> List[Dict]:
        cursor = self.db.guest_pages.find().sort("created_at", -1)
        return [strip_mongo_id(doc) for doc in cursor]

    def insert_upload(self, record: Dict) -> Dict:
        self.db.guest_uploads.insert_one(dict(record))
        return record

    def list_uploads(self, token: str) -> List[Dict]:
        cursor = self.db.guest_uploads.find({"token": token}).sort("created_at", 1)
        return [strip_mongo_id(doc) for doc in cursor]


class GuestStore:
    """Reads and writes through the managed store, falling back to memory.

    Every managed-store failure is logged and the in-memory store answers in
    its place. Listings merge both so records written during an outage stay
    visible.
    """

    def __init__(self, managed: Optional[MongoStore], fallback: MemoryStore, logger):
        self.managed = managed
        self.fallback = fallback
        self.logger = logger

    @property
    def mode(self) -> str:
        return "mongo" if self.managed is not None else "memory"

    def _try_managed(self, action: str, method: str, *args):
        if self.managed is None:
            return False, None
        try:
            return True, getattr(self.managed, method)(*args)
        except PyMongoError as exc:
            self.logger.warning("Managed store failed to %s: %s", action, exc)
            return False, None

    def list_products(self) -> List[Dict]:
        ok, products = self._try_managed("fetch products", "list_products")
        if ok and products is not None:
            return products
        return self.fallback.list_products()

    def get_product(self, product_id: str) -> Optional[Dict]:
        product = self.fallback.get_product(product_id)
        ok, managed_product = self._try_managed("fetch product", "get_product", product_id)
        if ok and managed_product:
            product = managed_product
        return product

    def create_guest_page(self, record: Dict) -> Dict:
        ok, _ = self._try_managed("insert guest page", "insert_guest_page", record)
        if not ok:
            self.fallback.insert_guest_page(record)
        return record

    def get_guest_page(self, token: str) -> Optional[Dict]:
        page = self.fallback.get_guest_page(token)
        ok, managed_page = self._try_managed("fetch guest page", "get_guest_page", token)
        if ok and managed_page:
            page = managed_page
        return page

    def update_guest_page(self, token: str, fields: Dict) -> Optional[Dict]:
        updated = self.fallback.update_guest_page(token, fields)
        ok, managed_page = self._try_managed(
            "update guest page", "update_guest_page", token, fields
        )
        if ok and managed_page:
            updated = managed_page
        return updated

    def mark_guest_page_paid(self, token: str, fields: Dict) -> Optional[Dict]:
        update = dict(fields)
        update["paid"] = True
        update.setdefault("paid_at", utc_timestamp())
        return self.update_guest_page(token, update)

    def list_guest_pages(self) -> List[Dict]:
        ok, managed_pages = self._try_managed("fetch guest pages", "list_guest_pages")
        pages = merge_by_id(managed_pages if ok else [], self.fallback.list_guest_pages())
        pages.sort(key=lambda page: str(page.get("created_at") or ""), reverse=True)
        return pages

    def add_upload(self, record: Dict) -> Dict:
        ok, _ = self._try_managed("insert upload record", "insert_upload", record)
        if not ok:
            self.fallback.insert_upload(record)
        return record

    def list_uploads(self, token: str) -> List[Dict]:
        ok, managed_uploads = self._try_managed("load uploads", "list_uploads", token)
        uploads = merge_by_id(managed_uploads if ok else [], self.fallback.list_uploads(token))
        uploads.sort(key=lambda upload: str(upload.get("created_at") or ""))
        return uploads
