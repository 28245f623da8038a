# marketplace/catalog_service/main.py
from fastapi import FastAPI, HTTPException

app = FastAPI(title="Catalog Service (dev mock)")


PRODUCTS = {
    1: {
        "id": 1,
        "store_id": 1,
        "name": "Cotton T-Shirt",
        "description": "Plain crew neck tee",
        "image": "https://cdn.example.com/p/1.jpg",
        "sku": "TS-001",
        "price": "1000.00",
        "selling_price": "1000.00",
        "inventory": 50,
        "variants": [
            {"name": "colour", "value": "black", "inventory": 20, "sku": "TS-001-BLK"},
            {"name": "colour", "value": "white", "selling_price": "950.00", "inventory": 30, "sku": "TS-001-WHT"},
        ],
        "size_variants": [
            {"size": "M", "inventory": 25},
            {"size": "XL", "price": "1100.00", "selling_price": "1100.00", "inventory": 5},
        ],
    },
    2: {
        "id": 2,
        "store_id": 1,
        "name": "Canvas Tote",
        "sku": "TB-002",
        "price": "500.00",
        "selling_price": "450.00",
        "inventory": 100,
    },
    3: {
        "id": 3,
        "store_id": 2,
        "name": "Ceramic Mug",
        "sku": "MG-003",
        "price": "300.00",
        "selling_price": "300.00",
        "inventory": 0,
    },
}

STORES = {
    1: {"id": 1, "name": "Thread & Co", "order_count": 0},
    2: {"id": 2, "name": "Kiln House", "order_count": 0},
}


@app.get("/products/{product_id}")
def get_product(product_id: int):
    product = PRODUCTS.get(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/stores/{store_id}")
def get_store(store_id: int):
    store = STORES.get(store_id)
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


@app.post("/stores/{store_id}/order-count")
def increment_order_count(store_id: int):
    store = STORES.get(store_id)
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    store["order_count"] += 1
    return store
