from schemas import CompanyInfo, Customer, Settings

WALK_IN_CUSTOMER_NAME = "Client de Passage"

WALK_IN_CUSTOMER = Customer(
    name=WALK_IN_CUSTOMER_NAME,
    email="contact@client.com",
    phone="N/A",
    address="Comptoir",
    ice="",
)

DEFAULT_SETTINGS = Settings(
    company_info=CompanyInfo(
        name="OULAD ALLOU",
        address="RUE 58 N° 3005 1ER ETAGE HAY EL AMAL, KÉNITRA",
        legal="SARL AU au capital de 100 000,00 MAD",
        ice="003435101000084",
        rc="79999",
    ),
    tax_rate=0.20,
)

LOW_STOCK_THRESHOLD = 10
TOP_N = 5

# Collections
PRODUCTS = "product"
CUSTOMERS = "customer"
DOCUMENTS = "document"
SETTINGS = "settings"
USERS = "user"

SYNCED_COLLECTIONS = (PRODUCTS, CUSTOMERS, DOCUMENTS, SETTINGS)

QUOTE = "quote"
DELIVERY_NOTE = "delivery_note"
INVOICE = "invoice"

DRAFT = "Draft"
CONVERTED = "Converted"
PAID = "Paid"
CANCELLED = "Cancelled"
DELIVERED = "Delivered"

STATUS_FOR_TYPE = {
    QUOTE: DRAFT,
    DELIVERY_NOTE: DELIVERED,
    INVOICE: PAID,
}

# Types that take goods out of stock when issued
STOCK_CONSUMING_TYPES = (DELIVERY_NOTE, INVOICE)

FINAL_STATUSES = (CONVERTED, CANCELLED)
