import logging
import os
import re
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from database import Database
from schemas import OUT_OF_STOCK, Usuario
from validators import (
    clean_digits,
    validate_birth_date,
    validate_cpf,
    validate_ddd,
    validate_name,
    validate_password,
    validate_password_confirmation,
    validate_phone,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@farmacia.com.br")
# admin login is disabled when unset
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# Anonymous cart keys are issued by POST /api/session and can never look like an e-mail
SESSION_PREFIX = "session_"
SESSION_ID_PATTERN = re.compile(r"session_[A-Za-z0-9_-]{22,64}")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = Database(os.getenv("DATABASE_PATH", "data/db.json"))
    database.init_database()
    app.state.db = database
    yield


app = FastAPI(title="Farmácia API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db(request: Request) -> Database:
    return request.app.state.db


# Helpers
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str = "user"


class Principal(BaseModel):
    email: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class UserOut(BaseModel):
    email: EmailStr
    nome: str
    cpf: str
    nasc: str
    ddd: str
    tel: str


class RegisterRequest(BaseModel):
    nome: str = ""
    nasc: str = ""
    cpf: str = ""
    ddd: str = ""
    tel: str = ""
    email: EmailStr
    senhan: str = ""
    csenha: str = ""


class LoginRequest(BaseModel):
    email: EmailStr
    senha: str = Field(..., min_length=1)


class FieldUpdate(BaseModel):
    campo: str
    valor: str = Field(..., min_length=1)


class ProductIn(BaseModel):
    nome: Optional[str] = None
    preco: Optional[float] = None
    precoDesconto: Optional[float] = None
    categoria: Optional[str] = None
    descricao: Optional[str] = None
    imagem: Optional[str] = None
    status: Optional[str] = None


class ReviewIn(BaseModel):
    nota: int = Field(..., ge=1, le=5)
    texto: str = ""


class QuantityIn(BaseModel):
    quantidade: int


class BannerIn(BaseModel):
    imagem: Optional[str] = None
    legenda: Optional[str] = None
    link: Optional[str] = None


def to_public(user: dict) -> UserOut:
    return UserOut(
        email=user.get("email"),
        nome=user.get("nome", ""),
        cpf=user.get("cpf", ""),
        nasc=user.get("nasc", ""),
        ddd=user.get("ddd", ""),
        tel=user.get("tel", ""),
    )


def verify_password(plain_password, hashed_password):
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # not a hash this context knows, e.g. a legacy plaintext record
        return False


def get_password_hash(password):
    return pwd_context.hash(password)


def is_admin_login(email: str, password: str) -> bool:
    if not ADMIN_PASSWORD:
        return False
    same_email = secrets.compare_digest(email.encode("utf-8"), ADMIN_EMAIL.encode("utf-8"))
    same_password = secrets.compare_digest(password.encode("utf-8"), ADMIN_PASSWORD.encode("utf-8"))
    return same_email and same_password


def new_session_id() -> str:
    return SESSION_PREFIX + secrets.token_urlsafe(24)


def anonymous_owner(x_session_id: Optional[str]) -> Optional[str]:
    """The session key if it has the issued shape, else None."""
    if x_session_id and SESSION_ID_PATTERN.fullmatch(x_session_id):
        return x_session_id
    return None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_optional_principal(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Principal]:
    if not token:
        return None
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    email = payload.get("sub")
    if email is None:
        raise credentials_exception
    return Principal(email=email, role=payload.get("role", "user"))


def get_current_principal(principal: Optional[Principal] = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: Database = Depends(get_db),
) -> dict:
    if principal.is_admin:
        raise HTTPException(403, "Função restrita a clientes")
    user = db.find_user(principal.email)
    if not user:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    return user


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin or principal.email != ADMIN_EMAIL:
        raise HTTPException(403, "Acesso negado. Apenas administradores podem acessar esta área.")
    return principal


def get_cart_owner(
    principal: Optional[Principal] = Depends(get_optional_principal),
    x_session_id: Optional[str] = Header(None),
) -> str:
    """Logged-in customers own carts by e-mail, visitors by their session key."""
    if principal is not None:
        if principal.is_admin:
            raise HTTPException(403, "Função restrita a clientes")
        return principal.email
    if not x_session_id:
        raise HTTPException(400, "Sessão ausente: envie o cabeçalho X-Session-Id")
    owner = anonymous_owner(x_session_id)
    if owner is None:
        raise HTTPException(400, "Sessão inválida: obtenha uma em POST /api/session")
    return owner


def get_product_or_404(product_id: str, db: Database) -> dict:
    produto = db.get_product(product_id)
    if not produto:
        raise HTTPException(404, "Produto não encontrado")
    return produto


def registration_errors(payload: RegisterRequest) -> List[str]:
    errors = []
    if not validate_name(payload.nome):
        errors.append("Nome deve conter de 3 a 50 caracteres!")
    if not validate_cpf(payload.cpf):
        errors.append("CPF inválido!")
    if not validate_birth_date(payload.nasc):
        errors.append("Data de Nascimento inválida! A idade deve ser no máximo 110 anos e não pode ser uma data futura.")
    if not validate_ddd(payload.ddd):
        errors.append("DDD inválido!")
    if not validate_phone(payload.tel):
        errors.append("Telefone inválido!")
    if not validate_password(payload.senhan):
        errors.append("A senha deve conter de 6 a 20 caracteres, com pelo menos um número, uma letra maiúscula e um caractere especial!")
    if not validate_password_confirmation(payload.csenha, payload.senhan):
        errors.append("As senhas não conferem!")
    return errors


FIELD_CHECKS = {
    "nome": (validate_name, "Nome deve ter entre 3 e 50 caracteres!"),
    "nasc": (validate_birth_date, "Data de nascimento inválida!"),
    "cpf": (validate_cpf, "CPF inválido!"),
    "ddd": (validate_ddd, "DDD inválido!"),
    "tel": (validate_phone, "Telefone inválido! Deve conter 9 dígitos."),
}

BLOCKED_LINK_FRAGMENTS = ("javascript:", "<script", "onclick")


@app.get("/")
def read_root():
    return {"message": "Farmácia backend is running"}


# Auth
@app.post("/api/session")
def create_session():
    return {"session_id": new_session_id()}


@app.post("/api/register", response_model=UserOut)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    errors = registration_errors(payload)
    if errors:
        raise HTTPException(422, errors)
    if db.find_user(payload.email) or payload.email == ADMIN_EMAIL:
        raise HTTPException(400, "E-mail já cadastrado!")
    user = Usuario(
        nome=payload.nome.strip(),
        email=payload.email,
        cpf=payload.cpf,
        nasc=payload.nasc,
        ddd=payload.ddd,
        tel=payload.tel,
        senhan=get_password_hash(payload.senhan),
    ).model_dump()
    if not db.add_user(user):
        raise HTTPException(500, "Não foi possível salvar o cadastro")
    return to_public(user)


@app.post("/api/login", response_model=Token)
def login(
    payload: LoginRequest,
    x_session_id: Optional[str] = Header(None),
    db: Database = Depends(get_db),
):
    if is_admin_login(payload.email, payload.senha):
        return Token(access_token=create_access_token({"sub": ADMIN_EMAIL, "role": "admin"}), role="admin")

    user = db.find_user(payload.email)
    if not user or not verify_password(payload.senha, user.get("senhan", "")):
        raise HTTPException(400, "E-mail ou senha inválidos!")

    session_owner = anonymous_owner(x_session_id)
    if session_owner:
        anonymous_cart = db.get_cart(session_owner)
        for item in anonymous_cart:
            db.add_to_cart(item["id"], user["email"], item["quantidade"])
        if anonymous_cart:
            db.clear_cart_by_owner(session_owner)
            logger.info("Merged %d cart line(s) from session into %s", len(anonymous_cart), user["email"])

    return Token(access_token=create_access_token({"sub": user["email"], "role": "user"}))


@app.get("/api/me", response_model=UserOut)
def me(user: dict = Depends(get_current_user)):
    return to_public(user)


@app.patch("/api/me", response_model=UserOut)
def update_me(payload: FieldUpdate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if payload.campo not in FIELD_CHECKS:
        raise HTTPException(400, "Campo inválido!")
    check, message = FIELD_CHECKS[payload.campo]
    if not check(payload.valor):
        raise HTTPException(422, message)
    if payload.campo == "cpf":
        cpf = clean_digits(payload.valor)
        taken = any(
            clean_digits(u.get("cpf")) == cpf and u.get("email") != user["email"]
            for u in db.get_users()
        )
        if taken:
            raise HTTPException(409, "CPF já cadastrado por outro usuário!")
    updated = db.update_user(user["email"], {payload.campo: payload.valor})
    if not updated:
        raise HTTPException(500, "Não foi possível atualizar o cadastro")
    return to_public(updated)


# Catalog
@app.get("/api/products")
def list_products(db: Database = Depends(get_db)):
    return db.get_products()


@app.get("/api/products/{product_id}")
def get_product(
    product_id: str,
    principal: Optional[Principal] = Depends(get_optional_principal),
    x_session_id: Optional[str] = Header(None),
    db: Database = Depends(get_db),
):
    produto = get_product_or_404(product_id, db)
    related = [
        p for p in db.get_products_by_category(produto["categoria"])
        if str(p["id"]) != str(produto["id"])
    ][:8]
    if principal is not None and not principal.is_admin:
        owner = principal.email
    else:
        owner = anonymous_owner(x_session_id)
    in_cart = db.user_has_product_in_cart(product_id, owner) if owner else False
    return {"product": produto, "related": related, "in_cart": in_cart}


@app.get("/api/categories/{nome}")
def products_by_category(nome: str, db: Database = Depends(get_db)):
    return {"categoria": nome, "items": db.get_products_by_category(nome)}


@app.get("/api/banners")
def list_banners(db: Database = Depends(get_db)):
    return db.get_banners()


# Cart
@app.post("/api/products/{product_id}/cart")
def add_to_cart(product_id: str, owner: str = Depends(get_cart_owner), db: Database = Depends(get_db)):
    produto = get_product_or_404(product_id, db)
    if produto["status"] == OUT_OF_STOCK:
        raise HTTPException(409, "Produto fora de estoque")
    if not db.add_to_cart(product_id, owner):
        raise HTTPException(500, "Não foi possível atualizar o carrinho")
    return {"added": True}


@app.get("/api/cart")
def get_cart(owner: str = Depends(get_cart_owner), db: Database = Depends(get_db)):
    items = db.get_cart(owner)
    total = 0.0
    for item in items:
        price = item["precoDesconto"] if item["precoDesconto"] is not None else item["preco"]
        total += price * item["quantidade"]
    return {"items": items, "total": round(total, 2)}


@app.patch("/api/cart/{product_id}")
def update_cart(product_id: str, payload: QuantityIn, owner: str = Depends(get_cart_owner), db: Database = Depends(get_db)):
    if not db.update_cart_quantity(product_id, owner, payload.quantidade):
        raise HTTPException(404, "Item não encontrado no carrinho")
    return {"updated": True, "removed": payload.quantidade <= 0}


@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, owner: str = Depends(get_cart_owner), db: Database = Depends(get_db)):
    if not db.remove_from_cart(product_id, owner):
        raise HTTPException(404, "Item não encontrado no carrinho")
    return {"deleted": True}


# Reviews
@app.post("/api/products/{product_id}/reviews")
def add_review(product_id: str, review: ReviewIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    get_product_or_404(product_id, db)
    if not db.add_review(product_id, review.model_dump(), user["email"]):
        raise HTTPException(403, "Adicione o produto ao carrinho antes de avaliar")
    return {"ok": True}


# Admin
@app.get("/api/admin/summary")
def admin_summary(_: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    return {
        "total_products": len(db.get_products()),
        "total_users": len(db.get_users()),
        "total_reviews": db.get_total_reviews(),
    }


@app.get("/api/admin/users", response_model=List[UserOut])
def admin_list_users(_: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    return [to_public(u) for u in db.get_users()]


@app.delete("/api/admin/users/{email}")
def admin_delete_user(email: str, _: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    if not db.delete_user(email):
        raise HTTPException(404, "Usuário não encontrado")
    return {"deleted": True}


@app.post("/api/admin/products")
def admin_create_product(payload: ProductIn, _: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    produto = db.add_product(payload.model_dump(exclude_none=True))
    if produto is None:
        raise HTTPException(500, "Não foi possível adicionar o produto")
    return produto


@app.put("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, payload: ProductIn, _: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    get_product_or_404(product_id, db)
    produto = db.update_product(product_id, payload.model_dump(exclude_none=True))
    if produto is None:
        raise HTTPException(500, "Não foi possível editar o produto")
    return produto


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, _: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    get_product_or_404(product_id, db)
    if not db.delete_product(product_id):
        raise HTTPException(500, "Não foi possível excluir o produto")
    return {"deleted": True}


@app.delete("/api/admin/products/{product_id}/reviews/{index}")
def admin_delete_review(product_id: str, index: int, _: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    get_product_or_404(product_id, db)
    if not db.delete_review(product_id, index):
        raise HTTPException(404, "Avaliação não encontrada")
    return {"deleted": True}


@app.put("/api/admin/banners/{banner_id}")
def admin_update_banner(banner_id: int, payload: BannerIn, _: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    if db.get_banner(banner_id) is None:
        raise HTTPException(404, "Banner não encontrado")
    updates = {}
    if payload.imagem:
        updates["imagem"] = payload.imagem.strip()
    if payload.legenda and payload.legenda.strip():
        updates["legenda"] = payload.legenda.strip()
    link = (payload.link or "").strip()
    if link:
        if any(fragment in link.lower() for fragment in BLOCKED_LINK_FRAGMENTS):
            logger.warning("Blocked banner link: %s", link)
            raise HTTPException(400, "Link inválido")
        updates["link"] = link if link.startswith("/") else "/" + link
    if not db.update_banner(banner_id, updates):
        raise HTTPException(500, "Não foi possível editar o banner")
    return db.get_banner(banner_id)


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_path": str(db.path),
        "collections": {},
    }
    try:
        if db.path.exists():
            data = db.read_database()
            response["collections"] = {name: len(items) for name, items in data.items()}
            response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
