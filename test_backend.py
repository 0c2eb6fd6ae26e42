import pytest
from fastapi.testclient import TestClient

import main
from main import ADMIN_EMAIL, app

ADMIN_PASSWORD = "Admin@2024"

VALID_USER = {
    "nome": "Maria Silva",
    "nasc": "1990-05-20",
    "cpf": "529.982.247-25",
    "ddd": "11",
    "tel": "987654321",
    "email": "maria@example.com",
    "senhan": "Senha@123",
    "csenha": "Senha@123",
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "db.json"))
    monkeypatch.setattr(main, "ADMIN_PASSWORD", ADMIN_PASSWORD)
    with TestClient(app) as c:
        yield c


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def session_headers(client):
    response = client.post("/api/session")
    assert response.status_code == 200
    return {"X-Session-Id": response.json()["session_id"]}


def admin_token(client):
    response = client.post("/api/login", json={"email": ADMIN_EMAIL, "senha": ADMIN_PASSWORD})
    assert response.status_code == 200
    assert response.json()["role"] == "admin"
    return response.json()["access_token"]


def register_and_login(client, headers=None, **overrides):
    payload = {**VALID_USER, **overrides}
    assert client.post("/api/register", json=payload).status_code == 200
    response = client.post(
        "/api/login",
        json={"email": payload["email"], "senha": payload["senhan"]},
        headers=headers or {},
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def create_product(client, **fields):
    body = {"nome": "Dipirona 500mg", "preco": 12.5, "categoria": "Medicamentos", **fields}
    response = client.post("/api/admin/products", json=body, headers=auth(admin_token(client)))
    assert response.status_code == 200
    return response.json()


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "running" in response.json()["message"]


def test_database_status(client):
    response = client.get("/test")
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "✅ Connected & Working"
    assert data["collections"]["banners"] == 3


def test_register_success(client):
    response = client.post("/api/register", json=VALID_USER)
    assert response.status_code == 200
    data = response.json()
    assert data["email"] == "maria@example.com"
    assert "senhan" not in data


def test_register_collects_validation_errors(client):
    payload = {**VALID_USER, "cpf": "111.111.111-11", "tel": "999999999", "ddd": "20", "senhan": "fraca", "csenha": "outra"}
    response = client.post("/api/register", json=payload)
    assert response.status_code == 422
    errors = response.json()["detail"]
    assert "CPF inválido!" in errors
    assert "Telefone inválido!" in errors
    assert "DDD inválido!" in errors
    assert "As senhas não conferem!" in errors


def test_register_future_birth_date(client):
    response = client.post("/api/register", json={**VALID_USER, "nasc": "2999-01-01"})
    assert response.status_code == 422


def test_register_duplicate_email(client):
    assert client.post("/api/register", json=VALID_USER).status_code == 200
    response = client.post("/api/register", json=VALID_USER)
    assert response.status_code == 400


def test_password_is_not_stored_in_plaintext(client):
    client.post("/api/register", json=VALID_USER)
    user = app.state.db.find_user("maria@example.com")
    assert user["senhan"] != VALID_USER["senhan"]


def test_login_wrong_password(client):
    client.post("/api/register", json=VALID_USER)
    response = client.post("/api/login", json={"email": VALID_USER["email"], "senha": "Errada@1"})
    assert response.status_code == 400


def test_me(client):
    token = register_and_login(client)
    response = client.get("/api/me", headers=auth(token))
    assert response.status_code == 200
    assert response.json()["nome"] == "Maria Silva"


def test_me_requires_token(client):
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/me", headers=auth("garbage")).status_code == 401


def test_update_me_field(client):
    token = register_and_login(client)
    response = client.patch("/api/me", json={"campo": "tel", "valor": "912345678"}, headers=auth(token))
    assert response.status_code == 200
    assert response.json()["tel"] == "912345678"


def test_update_me_rejects_invalid_values(client):
    token = register_and_login(client)
    assert client.patch("/api/me", json={"campo": "ddd", "valor": "00"}, headers=auth(token)).status_code == 422
    assert client.patch("/api/me", json={"campo": "email", "valor": "x@example.com"}, headers=auth(token)).status_code == 400


def test_update_me_cpf_taken(client):
    client.post("/api/register", json={**VALID_USER, "email": "ana@example.com", "cpf": "111.444.777-35"})
    token = register_and_login(client)
    response = client.patch("/api/me", json={"campo": "cpf", "valor": "111.444.777-35"}, headers=auth(token))
    assert response.status_code == 409


def test_update_me_cpf_taken_ignores_formatting(client):
    client.post("/api/register", json={**VALID_USER, "email": "ana@example.com", "cpf": "111.444.777-35"})
    token = register_and_login(client)
    response = client.patch("/api/me", json={"campo": "cpf", "valor": "11144477735"}, headers=auth(token))
    assert response.status_code == 409
    assert client.get("/api/me", headers=auth(token)).json()["cpf"] == VALID_USER["cpf"]


def test_list_and_get_products(client):
    produto = create_product(client)
    create_product(client, nome="Paracetamol")
    assert len(client.get("/api/products").json()) == 2

    response = client.get(f"/api/products/{produto['id']}")
    assert response.status_code == 200
    data = response.json()
    assert data["product"]["nome"] == "Dipirona 500mg"
    assert [p["nome"] for p in data["related"]] == ["Paracetamol"]
    assert data["in_cart"] is False
    assert client.get("/api/products/123").status_code == 404


def test_products_by_category(client):
    create_product(client, nome="Vitamina C", categoria="Vitaminas")
    create_product(client, nome="Sabonete", categoria="Higiene")
    create_product(client, nome="Dipirona")
    response = client.get("/api/categories/bem-estar")
    assert {p["nome"] for p in response.json()["items"]} == {"Vitamina C", "Sabonete"}


def test_anonymous_cart(client):
    produto = create_product(client)
    headers = session_headers(client)
    assert client.post(f"/api/products/{produto['id']}/cart", headers=headers).status_code == 200
    assert client.post(f"/api/products/{produto['id']}/cart", headers=headers).status_code == 200
    cart = client.get("/api/cart", headers=headers).json()
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantidade"] == 2
    assert cart["total"] == 25.0


def test_cart_requires_owner(client):
    produto = create_product(client)
    assert client.post(f"/api/products/{produto['id']}/cart").status_code == 400


def test_cart_out_of_stock(client):
    produto = create_product(client, status="fora-de-estoque")
    response = client.post(f"/api/products/{produto['id']}/cart", headers=session_headers(client))
    assert response.status_code == 409


def test_cart_total_uses_discount(client):
    produto = create_product(client, preco=20, precoDesconto=15)
    headers = session_headers(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=headers)
    assert client.get("/api/cart", headers=headers).json()["total"] == 15.0


def test_update_cart_quantity_zero_removes(client):
    produto = create_product(client)
    headers = session_headers(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=headers)
    response = client.patch(f"/api/cart/{produto['id']}", json={"quantidade": 3}, headers=headers)
    assert response.status_code == 200
    assert client.get("/api/cart", headers=headers).json()["items"][0]["quantidade"] == 3
    response = client.patch(f"/api/cart/{produto['id']}", json={"quantidade": 0}, headers=headers)
    assert response.json()["removed"] is True
    assert client.get("/api/cart", headers=headers).json()["items"] == []


def test_remove_from_cart(client):
    produto = create_product(client)
    headers = session_headers(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=headers)
    assert client.delete(f"/api/cart/{produto['id']}", headers=headers).status_code == 200
    assert client.delete(f"/api/cart/{produto['id']}", headers=headers).status_code == 404


def test_login_merges_anonymous_cart(client):
    produto = create_product(client)
    headers = session_headers(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=headers)
    client.post(f"/api/products/{produto['id']}/cart", headers=headers)

    token = register_and_login(client, headers=headers)
    cart = client.get("/api/cart", headers=auth(token)).json()
    assert cart["items"][0]["quantidade"] == 2
    assert client.get("/api/cart", headers=headers).json()["items"] == []


def test_review_requires_product_in_cart(client):
    produto = create_product(client)
    token = register_and_login(client)
    review = {"nota": 5, "texto": "Funcionou muito bem"}

    response = client.post(f"/api/products/{produto['id']}/reviews", json=review, headers=auth(token))
    assert response.status_code == 403

    client.post(f"/api/products/{produto['id']}/cart", headers=auth(token))
    assert client.get(f"/api/products/{produto['id']}", headers=auth(token)).json()["in_cart"] is True
    response = client.post(f"/api/products/{produto['id']}/reviews", json=review, headers=auth(token))
    assert response.status_code == 200
    avaliacoes = client.get(f"/api/products/{produto['id']}").json()["product"]["avaliacoes"]
    assert [a["texto"] for a in avaliacoes] == ["Funcionou muito bem"]


def test_review_unknown_product_and_anonymous(client):
    token = register_and_login(client)
    assert client.post("/api/products/1/reviews", json={"nota": 5}, headers=auth(token)).status_code == 404
    produto = create_product(client)
    assert client.post(f"/api/products/{produto['id']}/reviews", json={"nota": 5}).status_code == 401


def test_admin_cannot_use_cart(client):
    produto = create_product(client)
    token = admin_token(client)
    assert client.post(f"/api/products/{produto['id']}/cart", headers=auth(token)).status_code == 403


def test_admin_routes_require_admin(client):
    token = register_and_login(client)
    assert client.get("/api/admin/summary").status_code == 401
    assert client.get("/api/admin/summary", headers=auth(token)).status_code == 403


def test_admin_create_product_defaults(client):
    response = client.post("/api/admin/products", json={}, headers=auth(admin_token(client)))
    assert response.status_code == 200
    data = response.json()
    assert data["nome"] == "Produto sem nome"
    assert data["categoria"] == "Geral"
    assert data["precoDesconto"] is None
    assert data["imagem"] == "/imagens/foto.jpg"


def test_admin_update_product(client):
    produto = create_product(client)
    token = admin_token(client)
    response = client.put(f"/api/admin/products/{produto['id']}", json={"preco": 9.9}, headers=auth(token))
    assert response.status_code == 200
    assert response.json()["preco"] == 9.9
    assert response.json()["nome"] == "Dipirona 500mg"
    assert client.put("/api/admin/products/1", json={}, headers=auth(token)).status_code == 404


def test_admin_delete_product_cascades(client):
    produto = create_product(client)
    headers = session_headers(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=headers)
    response = client.delete(f"/api/admin/products/{produto['id']}", headers=auth(admin_token(client)))
    assert response.status_code == 200
    assert client.get("/api/cart", headers=headers).json()["items"] == []
    assert app.state.db.read_database()["carrinho"] == []


def test_admin_delete_review(client):
    produto = create_product(client)
    token = register_and_login(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=auth(token))
    client.post(f"/api/products/{produto['id']}/reviews", json={"nota": 4}, headers=auth(token))

    admin = auth(admin_token(client))
    assert client.get("/api/admin/summary", headers=admin).json()["total_reviews"] == 1
    assert client.delete(f"/api/admin/products/{produto['id']}/reviews/3", headers=admin).status_code == 404
    assert client.delete(f"/api/admin/products/{produto['id']}/reviews/0", headers=admin).status_code == 200
    assert client.get("/api/admin/summary", headers=admin).json()["total_reviews"] == 0


def test_admin_users(client):
    produto = create_product(client)
    token = register_and_login(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=auth(token))

    admin = auth(admin_token(client))
    users = client.get("/api/admin/users", headers=admin).json()
    assert [u["email"] for u in users] == ["maria@example.com"]
    assert client.delete("/api/admin/users/maria@example.com", headers=admin).status_code == 200
    assert client.delete("/api/admin/users/maria@example.com", headers=admin).status_code == 404
    assert app.state.db.read_database()["carrinho"] == []


def test_banners(client):
    banners = client.get("/api/banners").json()
    assert [b["id"] for b in banners] == [1, 2, 3]


def test_admin_update_banner(client):
    admin = auth(admin_token(client))
    response = client.put("/api/admin/banners/1", json={"legenda": "Ofertas", "link": "ofertas"}, headers=admin)
    assert response.status_code == 200
    data = response.json()
    assert data["legenda"] == "Ofertas"
    assert data["link"] == "/ofertas"
    assert data["imagem"] == "/imagens/1.png"


def test_admin_update_banner_rejects_script_links(client):
    admin = auth(admin_token(client))
    response = client.put("/api/admin/banners/1", json={"link": "javascript:alert(1)"}, headers=admin)
    assert response.status_code == 400
    assert client.put("/api/admin/banners/9", json={"legenda": "x"}, headers=admin).status_code == 404


def test_admin_login_disabled_without_password(client, monkeypatch):
    monkeypatch.setattr(main, "ADMIN_PASSWORD", None)
    response = client.post("/api/login", json={"email": ADMIN_EMAIL, "senha": ""})
    assert response.status_code == 400
    response = client.post("/api/login", json={"email": ADMIN_EMAIL, "senha": "Admin@2024"})
    assert response.status_code == 400


def test_admin_login_wrong_password(client):
    response = client.post("/api/login", json={"email": ADMIN_EMAIL, "senha": ADMIN_PASSWORD + "x"})
    assert response.status_code == 400


def test_session_ids_are_issued_by_server(client):
    first = client.post("/api/session").json()["session_id"]
    second = client.post("/api/session").json()["session_id"]
    assert first != second
    assert main.SESSION_ID_PATTERN.fullmatch(first)
    assert "@" not in first


def test_forged_session_cannot_reach_user_cart(client):
    produto = create_product(client)
    token = register_and_login(client)
    client.post(f"/api/products/{produto['id']}/cart", headers=auth(token))

    forged = {"X-Session-Id": VALID_USER["email"]}
    assert client.get("/api/cart", headers=forged).status_code == 400
    assert client.post(f"/api/products/{produto['id']}/cart", headers=forged).status_code == 400
    assert client.get(f"/api/products/{produto['id']}", headers=forged).json()["in_cart"] is False

    register_and_login(
        client,
        headers=forged,
        email="ana@example.com",
        cpf="111.444.777-35",
    )
    cart = client.get("/api/cart", headers=auth(token)).json()
    assert [item["quantidade"] for item in cart["items"]] == [1]
    assert app.state.db.get_cart("ana@example.com") == []
