"""
JSON file database

A single JSON document holds every collection. Each operation reads the
whole document, changes it in memory and writes it back. A lock on the
handle serializes those cycles within one process, and writes replace the
file atomically so readers never see a half-written document. Separate
processes sharing the file can still lose updates (last writer wins).

Read failures fall back to an empty document and are logged. Write
failures are logged and reported as a False return value.
"""
import copy
import functools
import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from schemas import DEFAULT_BANNERS, Avaliacao, Banner, ItemCarrinho, Produto

logger = logging.getLogger(__name__)

COLLECTIONS = ("produtos", "avaliacoes", "carrinho", "usuarios", "banners")

# Category names that are also reachable through one shared group name
CATEGORY_GROUPS = {
    "bem-estar": ["Vitaminas", "Suplementos", "Higiene"],
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_banners() -> List[dict]:
    return [b.model_dump() for b in DEFAULT_BANNERS]


def empty_document() -> Dict[str, list]:
    """Empty collections plus the seeded banners."""
    data = {name: [] for name in COLLECTIONS}
    data["banners"] = default_banners()
    return data


def normalize_product(produto: dict) -> dict:
    return Produto.model_validate(produto).model_dump()


def _same_id(a: Any, b: Any) -> bool:
    return str(a) == str(b)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def synchronized(method):
    """Run the whole read-modify-write cycle of `method` under the handle's lock."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class Database:
    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path)
        # reentrant: public methods call read_database/write_database
        self._lock = threading.RLock()

    # --- primitives ---

    @synchronized
    def init_database(self) -> None:
        """Create the data file with empty collections and seeded banners if missing."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            return
        if self.write_database(empty_document()):
            logger.info("Created database at %s", self.path)

    @synchronized
    def read_database(self) -> Dict[str, list]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("database root is not an object")
        except (OSError, ValueError):
            logger.exception("Error reading database %s", self.path)
            return empty_document()

        for name in COLLECTIONS:
            if not isinstance(data.get(name), list):
                data[name] = default_banners() if name == "banners" else []
        return data

    @synchronized
    def write_database(self, data: Dict[str, list]) -> bool:
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.path.parent,
                prefix=self.path.name + ".", suffix=".tmp", delete=False,
            ) as f:
                tmp_path = f.name
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
            return True
        except (OSError, TypeError, ValueError):
            logger.exception("Error writing database %s", self.path)
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)
            return False

    @synchronized
    def create_document(self, collection_name: str, data: dict) -> bool:
        db = self.read_database()
        db[collection_name].append(data)
        return self.write_database(db)

    @synchronized
    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None) -> List[dict]:
        docs = self.read_database().get(collection_name, [])
        if filter_dict:
            docs = [d for d in docs if all(d.get(k) == v for k, v in filter_dict.items())]
        return docs

    # --- products ---

    def _next_product_id(self, produtos: List[dict]) -> int:
        new_id = int(time.time() * 1000)
        existing = [i for i in (_as_int(p.get("id")) for p in produtos) if i is not None]
        if existing and new_id <= max(existing):
            new_id = max(existing) + 1
        return new_id

    @synchronized
    def add_product(self, produto: dict) -> Optional[dict]:
        db = self.read_database()
        record = normalize_product({**produto, "avaliacoes": []})
        record["id"] = self._next_product_id(db["produtos"])
        db["produtos"].append(record)
        if not self.write_database(db):
            return None
        return record

    @synchronized
    def get_products(self) -> List[dict]:
        return [normalize_product(p) for p in self.read_database()["produtos"]]

    @synchronized
    def get_product(self, product_id) -> Optional[dict]:
        for p in self.read_database()["produtos"]:
            if _same_id(p.get("id"), product_id):
                return normalize_product(p)
        return None

    @synchronized
    def update_product(self, product_id, updates: dict) -> Optional[dict]:
        """Merge updates over the stored product. The id and reviews are never replaced."""
        db = self.read_database()
        for i, p in enumerate(db["produtos"]):
            if _same_id(p.get("id"), product_id):
                merged = {**p, **updates, "id": p.get("id"), "avaliacoes": p.get("avaliacoes") or []}
                db["produtos"][i] = normalize_product(merged)
                if not self.write_database(db):
                    return None
                return db["produtos"][i]
        return None

    @synchronized
    def delete_product(self, product_id) -> bool:
        db = self.read_database()
        remaining = [p for p in db["produtos"] if not _same_id(p.get("id"), product_id)]
        if len(remaining) == len(db["produtos"]):
            return False
        db["produtos"] = remaining
        before = len(db["carrinho"])
        db["carrinho"] = [c for c in db["carrinho"] if not _same_id(c.get("produtoId"), product_id)]
        logger.info("Deleted product %s and %d cart line(s)", product_id, before - len(db["carrinho"]))
        return self.write_database(db)

    @synchronized
    def get_products_by_category(self, categoria: str) -> List[dict]:
        if not isinstance(categoria, str) or not categoria:
            return []
        wanted = CATEGORY_GROUPS.get(categoria.lower(), [categoria])
        wanted = {c.lower() for c in wanted}
        return [
            normalize_product(p)
            for p in self.read_database()["produtos"]
            if isinstance(p.get("categoria"), str) and p["categoria"].lower() in wanted
        ]

    # --- reviews ---

    @synchronized
    def add_review(self, product_id, avaliacao: dict, owner: str) -> bool:
        """
        Append a review to the product and to the global log. Only allowed
        when `owner` has the product in the cart; returns False otherwise,
        and also when the product does not exist.
        """
        db = self.read_database()
        produto = next((p for p in db["produtos"] if _same_id(p.get("id"), product_id)), None)
        if produto is None:
            return False
        if not self._has_in_cart(db, product_id, owner):
            logger.info("Review rejected: %s does not have product %s in cart", owner, product_id)
            return False
        try:
            record = Avaliacao.model_validate({**avaliacao, "data": _now()}).model_dump()
        except ValidationError:
            logger.warning("Invalid review for product %s: %r", product_id, avaliacao)
            return False
        if not isinstance(produto.get("avaliacoes"), list):
            produto["avaliacoes"] = []
        produto["avaliacoes"].append(record)
        db["avaliacoes"].append(copy.deepcopy(record))
        return self.write_database(db)

    @synchronized
    def delete_review(self, product_id, index: int) -> bool:
        db = self.read_database()
        produto = next((p for p in db["produtos"] if _same_id(p.get("id"), product_id)), None)
        if produto is None:
            return False
        reviews = produto.get("avaliacoes") or []
        if not isinstance(index, int) or index < 0 or index >= len(reviews):
            return False
        removed = reviews.pop(index)
        produto["avaliacoes"] = reviews
        if removed in db["avaliacoes"]:
            db["avaliacoes"].remove(removed)
        return self.write_database(db)

    @synchronized
    def get_total_reviews(self) -> int:
        return len(self.read_database()["avaliacoes"])

    # --- cart ---

    @staticmethod
    def _find_line(db: dict, product_id, owner: str) -> Optional[dict]:
        for item in db["carrinho"]:
            if _same_id(item.get("produtoId"), product_id) and item.get("usuarioEmail") == owner:
                return item
        return None

    def _has_in_cart(self, db: dict, product_id, owner: str) -> bool:
        return self._find_line(db, product_id, owner) is not None

    @synchronized
    def add_to_cart(self, product_id, owner: str, quantidade: int = 1) -> bool:
        """Insert a line for (product, owner) or increase the quantity of the existing one."""
        if not owner or not isinstance(quantidade, int) or quantidade < 1:
            return False
        db = self.read_database()
        if not any(_same_id(p.get("id"), product_id) for p in db["produtos"]):
            return False
        item = self._find_line(db, product_id, owner)
        if item is not None:
            item["quantidade"] = int(item.get("quantidade") or 0) + quantidade
        else:
            line = ItemCarrinho(
                produtoId=str(product_id),
                usuarioEmail=owner,
                quantidade=quantidade,
                dataAdicionado=_now(),
            )
            db["carrinho"].append(line.model_dump())
        return self.write_database(db)

    @synchronized
    def get_cart(self, owner: str) -> List[dict]:
        """Cart lines of `owner` joined with current product data. Lines of deleted products are dropped."""
        db = self.read_database()
        produtos = {str(p.get("id")): p for p in db["produtos"]}
        items = []
        for item in db["carrinho"]:
            if item.get("usuarioEmail") != owner:
                continue
            produto = produtos.get(str(item.get("produtoId")))
            if produto is None:
                continue
            items.append({
                **normalize_product(produto),
                "quantidade": item.get("quantidade", 1),
                "dataAdicionado": item.get("dataAdicionado"),
            })
        return items

    @synchronized
    def update_cart_quantity(self, product_id, owner: str, quantidade: int) -> bool:
        """Overwrite the line quantity; a quantity of zero or less removes the line."""
        db = self.read_database()
        item = self._find_line(db, product_id, owner)
        if item is None:
            return False
        if quantidade <= 0:
            db["carrinho"].remove(item)
        else:
            item["quantidade"] = quantidade
        return self.write_database(db)

    @synchronized
    def remove_from_cart(self, product_id, owner: str) -> bool:
        db = self.read_database()
        item = self._find_line(db, product_id, owner)
        if item is None:
            return False
        db["carrinho"].remove(item)
        return self.write_database(db)

    @synchronized
    def user_has_product_in_cart(self, product_id, owner: str) -> bool:
        if not owner:
            return False
        return self._has_in_cart(self.read_database(), product_id, owner)

    @synchronized
    def clear_cart(self) -> bool:
        db = self.read_database()
        db["carrinho"] = []
        return self.write_database(db)

    @synchronized
    def clear_cart_by_owner(self, owner: str) -> bool:
        db = self.read_database()
        db["carrinho"] = [c for c in db["carrinho"] if c.get("usuarioEmail") != owner]
        return self.write_database(db)

    # --- users ---

    @synchronized
    def add_user(self, usuario: dict) -> bool:
        """No uniqueness check here; callers look the e-mail up with find_user first."""
        return self.create_document("usuarios", dict(usuario))

    @synchronized
    def find_user(self, email: str) -> Optional[dict]:
        for u in self.read_database()["usuarios"]:
            if u.get("email") == email:
                return u
        return None

    @synchronized
    def get_users(self) -> List[dict]:
        return self.get_documents("usuarios")

    @synchronized
    def update_user(self, email: str, updates: dict) -> Optional[dict]:
        db = self.read_database()
        for usuario in db["usuarios"]:
            if usuario.get("email") == email:
                usuario.update(updates)
                if not self.write_database(db):
                    return None
                return usuario
        return None

    @synchronized
    def delete_user(self, email: str) -> bool:
        db = self.read_database()
        remaining = [u for u in db["usuarios"] if u.get("email") != email]
        if len(remaining) == len(db["usuarios"]):
            return False
        db["usuarios"] = remaining
        db["carrinho"] = [c for c in db["carrinho"] if c.get("usuarioEmail") != email]
        logger.info("Deleted user %s and their cart", email)
        return self.write_database(db)

    # --- banners ---

    @synchronized
    def get_banners(self) -> List[dict]:
        return self.read_database()["banners"]

    @synchronized
    def get_banner(self, banner_id) -> Optional[dict]:
        wanted = _as_int(banner_id)
        if wanted is None:
            return None
        for b in self.read_database()["banners"]:
            if _as_int(b.get("id")) == wanted:
                return b
        return None

    @synchronized
    def update_banner(self, banner_id, updates: dict) -> bool:
        """Overwrite imagem/legenda/link; omitted or empty fields keep their stored value."""
        wanted = _as_int(banner_id)
        if wanted is None:
            return False
        db = self.read_database()
        for i, b in enumerate(db["banners"]):
            if _as_int(b.get("id")) != wanted:
                continue
            merged = {
                "id": wanted,
                "imagem": updates.get("imagem") or b.get("imagem"),
                "legenda": updates.get("legenda") or b.get("legenda", ""),
                "link": updates.get("link") or b.get("link", "/home"),
            }
            try:
                db["banners"][i] = Banner.model_validate(merged).model_dump()
            except ValidationError:
                logger.warning("Invalid banner update for %s: %r", banner_id, updates)
                return False
            return self.write_database(db)
        logger.error("Banner %s not found", banner_id)
        return False
