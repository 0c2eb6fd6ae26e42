"""
Database Schemas for the pharmacy storefront

Each Pydantic model describes the records of one collection in the JSON
document. Key names match the stored document:
- Produto -> "produtos"
- Avaliacao -> "avaliacoes"
- ItemCarrinho -> "carrinho"
- Usuario -> "usuarios"
- Banner -> "banners"
"""
import math
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_PRODUCT_NAME = "Produto sem nome"
DEFAULT_CATEGORY = "Geral"
DEFAULT_IMAGE = "/imagens/foto.jpg"
IN_STOCK = "em-estoque"
OUT_OF_STOCK = "fora-de-estoque"

Status = Literal["em-estoque", "fora-de-estoque"]


def _to_price(value: Any) -> Optional[float]:
    """Non-negative float or None when the value can't be read as one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
        if value == "":
            return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(price) or math.isinf(price) or price < 0:
        return None
    return price


class Avaliacao(BaseModel):
    """Review, stored both on the product and in the global log."""
    model_config = ConfigDict(extra="allow")

    nota: int = Field(..., ge=1, le=5)
    texto: str = ""
    data: Optional[str] = Field(None, description="ISO 8601 creation timestamp")


class Produto(BaseModel):
    """
    Product record. Validation doubles as normalization: absent or invalid
    fields fall back to their defaults, and unknown keys are kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None
    nome: str = DEFAULT_PRODUCT_NAME
    preco: float = 0.0
    precoDesconto: Optional[float] = None
    categoria: str = DEFAULT_CATEGORY
    descricao: str = ""
    imagem: str = DEFAULT_IMAGE
    status: Status = IN_STOCK
    avaliacoes: List[Any] = Field(default_factory=list)

    @field_validator("nome", mode="before")
    @classmethod
    def _nome(cls, v):
        return str(v) if v else DEFAULT_PRODUCT_NAME

    @field_validator("preco", mode="before")
    @classmethod
    def _preco(cls, v):
        price = _to_price(v)
        return 0.0 if price is None else price

    @field_validator("precoDesconto", mode="before")
    @classmethod
    def _preco_desconto(cls, v):
        return _to_price(v)

    @field_validator("categoria", mode="before")
    @classmethod
    def _categoria(cls, v):
        return str(v) if v else DEFAULT_CATEGORY

    @field_validator("descricao", mode="before")
    @classmethod
    def _descricao(cls, v):
        return str(v) if v else ""

    @field_validator("imagem", mode="before")
    @classmethod
    def _imagem(cls, v):
        return str(v) if v else DEFAULT_IMAGE

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return v if v in (IN_STOCK, OUT_OF_STOCK) else IN_STOCK

    @field_validator("avaliacoes", mode="before")
    @classmethod
    def _avaliacoes(cls, v):
        return v if isinstance(v, list) else []


class ItemCarrinho(BaseModel):
    """One cart line, unique per (produtoId, usuarioEmail)."""
    produtoId: str
    usuarioEmail: str = Field(..., description="User e-mail or anonymous session key")
    quantidade: int = Field(1, ge=1)
    dataAdicionado: str


class Usuario(BaseModel):
    model_config = ConfigDict(extra="allow")

    nome: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address, unique")
    cpf: str
    nasc: str = Field(..., description="Birth date, YYYY-MM-DD")
    ddd: str
    tel: str
    senhan: str = Field(..., description="Hashed password")


class Banner(BaseModel):
    id: int
    imagem: str
    legenda: str = ""
    link: str = "/home"


DEFAULT_BANNERS = [
    Banner(id=1, imagem="/imagens/1.png", legenda="Cuide da sua saúde com quem entende", link="/home"),
    Banner(id=2, imagem="/imagens/2.png", legenda="Vitaminas e suplementos com desconto", link="/categoria/bem-estar"),
    Banner(id=3, imagem="/imagens/3.png", legenda="Higiene e beleza para toda a família", link="/categoria/higiene"),
]
