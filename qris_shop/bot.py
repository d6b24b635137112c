from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import (
    BufferedInputFile,
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    Message,
    ReplyKeyboardMarkup,
)

from qris_shop import texts
from qris_shop.config import Settings
from qris_shop.errors import (
    DisambiguationExhausted,
    InsufficientBalance,
    InsufficientStock,
    QrIssuanceFailed,
    StoreUnavailable,
    UnknownProduct,
)
from qris_shop.models import OpenedPayment
from qris_shop.storefront import Storefront

logger = logging.getLogger(__name__)

DEPOSIT_BUTTON = "💳 Deposit Saldo"
STOCK_BUTTON = "📦 All Stock"
MENU_BUTTON = "🔙 Kembali ke Menu"
MENU_TEXTS = {DEPOSIT_BUTTON, STOCK_BUTTON, MENU_BUTTON}

router = Router()


class ShopStates(StatesGroup):
    awaiting_deposit_amount = State()
    awaiting_qty_edit = State()


def parse_positive_int(raw: str) -> int | None:
    try:
        value = int(raw.strip())
        if value <= 0:
            return None
        return value
    except Exception:
        return None


def is_admin(uid: int, settings: Settings) -> bool:
    return uid in settings.admin_ids


def reply_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=DEPOSIT_BUTTON), KeyboardButton(text=STOCK_BUTTON)],
            [KeyboardButton(text=MENU_BUTTON)],
        ],
        resize_keyboard=True,
    )


def home_keyboard(storefront: Storefront) -> InlineKeyboardMarkup:
    categories = storefront.catalog.categories()
    rows = []
    for i in range(0, len(categories), 2):
        rows.append(
            [InlineKeyboardButton(text=f"{j + 1}", callback_data=f"cat:{j}") for j in range(i, min(i + 2, len(categories)))]
        )
    return InlineKeyboardMarkup(inline_keyboard=rows)


def home_text(storefront: Storefront, user_id: int) -> str:
    categories = storefront.catalog.categories()
    text = f"💰 Saldo: {texts.rupiah(storefront.accounts.balance(user_id))}\n\n📦 Kategori Produk:\n"
    if not categories:
        return text + "\n❌ Belum ada kategori."
    return text + "\n".join(f"{i}. {name}" for i, name in enumerate(categories, 1))


def back_button(callback_data: str = "home") -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[[InlineKeyboardButton(text="🔙 Kembali", callback_data=callback_data)]])


def product_keyboard(product_id: int, qty: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(text="➖", callback_data=f"prod:{product_id}:{max(1, qty - 1)}"),
                InlineKeyboardButton(text="✏️", callback_data=f"qtyedit:{product_id}"),
                InlineKeyboardButton(text="➕", callback_data=f"prod:{product_id}:{qty + 1}"),
            ],
            [
                InlineKeyboardButton(text="💰 Saldo", callback_data=f"pay:saldo:{product_id}:{qty}"),
                InlineKeyboardButton(text="📱 QRIS", callback_data=f"pay:qris:{product_id}:{qty}"),
            ],
            [InlineKeyboardButton(text="🔙 Kembali", callback_data="home")],
        ]
    )


async def safe_edit(message: Message, text: str, reply_markup: InlineKeyboardMarkup | None = None):
    try:
        await message.edit_text(text, reply_markup=reply_markup)
    except TelegramBadRequest as e:
        if "message is not modified" in str(e):
            return
        raise


async def show_product(message: Message, storefront: Storefront, product_id: int, qty: int, edit: bool = True):
    product = storefront.catalog.get(product_id)
    text = texts.product_card(product, qty, storefront.stock(product))
    if edit:
        await safe_edit(message, text, product_keyboard(product.id, qty))
    else:
        await message.answer(text, reply_markup=product_keyboard(product.id, qty))


async def send_qris(message: Message, storefront: Storefront, opened: OpenedPayment):
    sent = await message.answer_photo(
        BufferedInputFile(opened.qr.image, filename="qris.png"),
        caption=texts.qris_caption(opened.request),
        reply_markup=back_button(),
    )
    storefront.attach_message(opened, sent.message_id)


@router.message(Command("start"))
@router.message(F.text == MENU_BUTTON)
async def start(message: Message, state: FSMContext, storefront: Storefront):
    await state.clear()
    storefront.accounts.register(message.from_user.id)
    await message.answer(home_text(storefront, message.from_user.id), reply_markup=home_keyboard(storefront))
    await message.answer("💳 Gunakan keyboard di bawah untuk deposit:", reply_markup=reply_menu())


@router.callback_query(F.data == "home")
async def home(callback: CallbackQuery, state: FSMContext, storefront: Storefront):
    await state.clear()
    text = home_text(storefront, callback.from_user.id)
    if callback.message.photo:
        await callback.message.answer(text, reply_markup=home_keyboard(storefront))
    else:
        await safe_edit(callback.message, text, home_keyboard(storefront))
    await callback.answer()


@router.message(Command("saldo", "balance"))
async def balance(message: Message, storefront: Storefront):
    await message.answer(f"💰 Saldo Anda: {texts.rupiah(storefront.accounts.balance(message.from_user.id))}")


@router.callback_query(F.data.startswith("cat:"))
async def category(callback: CallbackQuery, storefront: Storefront):
    categories = storefront.catalog.categories()
    raw = callback.data.split(":", 1)[1]
    index = int(raw) if raw.isdigit() else -1
    if not 0 <= index < len(categories):
        await callback.answer("Kategori tidak ditemukan", show_alert=True)
        return
    name = categories[index]
    products = storefront.catalog.in_category(name)
    lines = [f"📦 Kategori: {name}\n"]
    for i, p in enumerate(products, 1):
        lines.append(f"{i}. {p.name}\n   💰 Harga: {texts.rupiah(p.price)}\n   📊 Stok: {storefront.stock(p)}\n   📝 {p.detail}\n")
    rows = []
    for i in range(0, len(products), 2):
        rows.append(
            [InlineKeyboardButton(text=f"{j + 1}", callback_data=f"prod:{products[j].id}:1") for j in range(i, min(i + 2, len(products)))]
        )
    rows.append([InlineKeyboardButton(text="🔙 Kembali", callback_data="home")])
    await safe_edit(callback.message, "\n".join(lines), InlineKeyboardMarkup(inline_keyboard=rows))
    await callback.answer()


@router.callback_query(F.data.startswith("prod:"))
async def product(callback: CallbackQuery, storefront: Storefront):
    _, product_id, qty = callback.data.split(":")
    try:
        await show_product(callback.message, storefront, int(product_id), max(1, int(qty)))
    except UnknownProduct:
        await callback.answer("Produk tidak ditemukan", show_alert=True)
        return
    await callback.answer()


@router.callback_query(F.data.startswith("qtyedit:"))
async def qty_edit(callback: CallbackQuery, state: FSMContext):
    await state.set_state(ShopStates.awaiting_qty_edit)
    await state.update_data(product_id=int(callback.data.split(":", 1)[1]))
    await callback.answer("Kirim jumlah yang diinginkan (angka saja)")


@router.message(ShopStates.awaiting_qty_edit, ~F.text.in_(MENU_TEXTS), ~F.text.startswith("/"))
async def qty_edit_value(message: Message, state: FSMContext, storefront: Storefront):
    qty = parse_positive_int(message.text or "")
    if qty is None:
        await message.answer("❌ Jumlah harus berupa angka positif!")
        return
    data = await state.get_data()
    await state.clear()
    try:
        await show_product(message, storefront, data["product_id"], qty, edit=False)
    except UnknownProduct:
        await message.answer("Produk tidak ditemukan")


@router.callback_query(F.data.startswith("pay:saldo:"))
async def pay_with_balance(callback: CallbackQuery, storefront: Storefront):
    _, _, product_id, qty = callback.data.split(":")
    product_id, qty = int(product_id), int(qty)
    await callback.answer()
    try:
        result = await storefront.purchase_with_balance(callback.from_user.id, product_id, qty)
    except UnknownProduct:
        await safe_edit(callback.message, "Produk tidak ditemukan", back_button())
        return
    except InsufficientStock as e:
        await safe_edit(
            callback.message,
            f"❌ Stok tidak cukup!\n\n📊 Stok tersedia: {e.available}\n📦 Jumlah diminta: {e.requested}",
            back_button(f"prod:{product_id}:{qty}"),
        )
        return
    except InsufficientBalance as e:
        await safe_edit(
            callback.message,
            f"❌ Saldo tidak cukup!\n\n💰 Saldo Anda: {texts.rupiah(e.balance)}\n💵 Total: {texts.rupiah(e.requested)}\n\n"
            "Silakan isi saldo terlebih dahulu.",
            back_button(f"prod:{product_id}:{qty}"),
        )
        return
    except StoreUnavailable:
        logger.exception("balance purchase failed user_id=%s", callback.from_user.id)
        await callback.message.answer("Layanan sedang sibuk, coba lagi nanti")
        return
    await safe_edit(
        callback.message,
        f"✅ Pembelian Berhasil!\n\n📦 {result.product.name}\n📦 Jumlah: {result.qty}\n"
        f"💰 Total: {texts.rupiah(result.total)}\n\n💵 Saldo tersisa: {texts.rupiah(result.balance)}\n\nTerima kasih!",
        back_button(),
    )
    await callback.message.answer(texts.account_details(result.units))


@router.callback_query(F.data.startswith("pay:qris:"))
async def pay_with_qris(callback: CallbackQuery, storefront: Storefront):
    _, _, product_id, qty = callback.data.split(":")
    product_id, qty = int(product_id), int(qty)
    await callback.answer()
    try:
        opened = await storefront.start_qr_purchase(callback.from_user.id, product_id, qty)
    except UnknownProduct:
        await safe_edit(callback.message, "Produk tidak ditemukan", back_button())
        return
    except InsufficientStock as e:
        await safe_edit(
            callback.message,
            f"❌ Stok tidak cukup!\n\n📊 Stok tersedia: {e.available}\n📦 Jumlah diminta: {e.requested}",
            back_button(f"prod:{product_id}:{qty}"),
        )
        return
    except (QrIssuanceFailed, DisambiguationExhausted) as e:
        logger.warning("QRIS purchase not opened user_id=%s product_id=%s: %s", callback.from_user.id, product_id, e)
        await safe_edit(
            callback.message,
            "❌ Gagal membuat QRIS\n\nSilakan coba lagi atau hubungi admin.",
            back_button(f"prod:{product_id}:{qty}"),
        )
        return
    await callback.message.delete()
    await send_qris(callback.message, storefront, opened)


@router.message(F.text == DEPOSIT_BUTTON)
async def deposit_prompt(message: Message, state: FSMContext, storefront: Storefront):
    await state.set_state(ShopStates.awaiting_deposit_amount)
    await message.answer(
        "💳 Deposit Saldo\n\n"
        "Kirim jumlah deposit (contoh: 10000), bot akan membuat QRIS otomatis.\n\n"
        f"⚠️ Minimum deposit: {texts.rupiah(storefront.min_deposit)}"
    )


@router.message(ShopStates.awaiting_deposit_amount, ~F.text.in_(MENU_TEXTS), ~F.text.startswith("/"))
async def deposit_amount(message: Message, state: FSMContext, storefront: Storefront):
    amount = parse_positive_int(message.text or "")
    if amount is None or amount < storefront.min_deposit:
        await message.answer(f"❌ Jumlah deposit minimal {texts.rupiah(storefront.min_deposit)} dan harus berupa angka!")
        return
    await state.clear()
    try:
        opened = await storefront.start_deposit(message.from_user.id, amount)
    except (QrIssuanceFailed, DisambiguationExhausted) as e:
        logger.warning("deposit not opened user_id=%s amount=%s: %s", message.from_user.id, amount, e)
        await message.answer("❌ Gagal membuat QRIS\n\nSilakan coba lagi atau hubungi admin.")
        return
    await send_qris(message, storefront, opened)


@router.message(F.text == STOCK_BUTTON)
async def all_stock(message: Message, storefront: Storefront):
    products = storefront.catalog.all()
    if not products:
        await message.answer("❌ Belum ada produk tersedia.")
        return
    lines = ["📦 Semua stok produk\n"]
    for name in storefront.catalog.categories():
        lines.append(f"📁 {name}")
        lines.extend(f"  • {p.name} ({storefront.stock(p)})" for p in storefront.catalog.in_category(name))
        lines.append("")
    lines.append(f"💡 Total {len(products)} produk")
    await message.answer("\n".join(lines))


@router.message(Command("help"))
async def help_cmd(message: Message, settings: Settings):
    text = "📋 Daftar perintah\n\n/start - Mulai bot\n/saldo - Cek saldo\n/help - Bantuan"
    if is_admin(message.from_user.id, settings):
        text += (
            "\n\n👑 Admin\n"
            "/addproduk kategori,code,nama,harga,detail\n"
            "/addstok code,detail1,detail2,...\n"
            "/delstok code nomor1,nomor2\n"
            "/cekstok code\n"
            "/listproduk\n"
            "/listcategory\n"
            "/broadcast pesan\n"
            "/failed - pembayaran yang gagal diproses\n"
            "/resolve ID - tandai pembayaran gagal sudah ditangani"
        )
    await message.answer(text)


def command_args(message: Message) -> str:
    parts = (message.text or "").split(maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else ""


@router.message(Command("addproduk"))
async def add_product(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    parts = [p.strip() for p in command_args(message).split(",")]
    if len(parts) < 5:
        await message.answer("❌ Format: /addproduk kategori,code,nama,harga,detail")
        return
    category_name, code, name, price, detail = parts[0], parts[1], parts[2], parts[3], ",".join(parts[4:])
    price_value = parse_positive_int(price)
    if price_value is None:
        await message.answer("❌ Harga harus berupa angka positif")
        return
    if storefront.catalog.by_code(code):
        await message.answer(f"❌ Code {code} sudah dipakai")
        return
    p = storefront.catalog.add(category_name, code, name, price_value, detail)
    logger.info("product added id=%s code=%s by admin=%s", p.id, p.code, message.from_user.id)
    await message.answer(f"✅ Produk ditambahkan: {p.name} ({p.code}) {texts.rupiah(p.price)}")


@router.message(Command("addstok"))
async def add_stock(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    parts = [p.strip() for p in command_args(message).split(",")]
    if len(parts) < 2 or not parts[0]:
        await message.answer("❌ Format: /addstok code,detail1,detail2,...")
        return
    if not storefront.catalog.by_code(parts[0]):
        await message.answer(f"❌ Produk dengan code {parts[0]} tidak ditemukan")
        return
    total = await storefront.inventory.add(parts[0], parts[1:])
    await message.answer(f"✅ Stok {parts[0]} ditambahkan. Total stok: {total}")


@router.message(Command("delstok"))
async def del_stock(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    args = command_args(message).split(maxsplit=1)
    if len(args) != 2:
        await message.answer("❌ Format: /delstok code nomor1,nomor2")
        return
    positions = [n for n in (parse_positive_int(x) for x in args[1].split(",")) if n is not None]
    removed = await storefront.inventory.remove_at(args[0], positions)
    await message.answer(f"✅ {len(removed)} stok dihapus. Sisa: {storefront.inventory.count(args[0])}")


@router.message(Command("cekstok"))
async def check_stock(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    code = command_args(message)
    if not code:
        await message.answer("❌ Format: /cekstok code")
        return
    units = storefront.inventory.units(code)
    if not units:
        await message.answer(f"📦 Stok {code} kosong")
        return
    await message.answer(f"📦 Stok {code} ({len(units)}):\n" + "\n".join(f"{i}. {u}" for i, u in enumerate(units, 1)))


@router.message(Command("failed"))
async def failed_payments(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    failed = storefront.engine.registry.failed()
    if not failed:
        await message.answer("Tidak ada pembayaran gagal")
        return
    await message.answer("\n\n".join(texts.operator_failure(r) for r in failed))


@router.message(Command("resolve"))
async def resolve_payment(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    request_id = command_args(message)
    if storefront.engine.registry.resolve(request_id):
        await message.answer(f"✅ {request_id} ditandai selesai")
    else:
        await message.answer(f"❌ {request_id} bukan pembayaran gagal")


@router.message(Command("listproduk"))
async def list_products(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    products = storefront.catalog.all()
    if not products:
        await message.answer("❌ Belum ada produk")
        return
    lines = ["📦 Daftar produk\n"]
    for p in products:
        lines.append(f"{p.id}. [{p.code}] {p.name} - {texts.rupiah(p.price)} (stok {storefront.stock(p)})\n   📁 {p.category}")
    await message.answer("\n".join(lines))


@router.message(Command("listcategory"))
async def list_categories(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    categories = storefront.catalog.categories()
    if not categories:
        await message.answer("❌ Belum ada kategori")
        return
    await message.answer(
        "📁 Daftar kategori\n\n"
        + "\n".join(f"{i}. {name} ({len(storefront.catalog.in_category(name))} produk)" for i, name in enumerate(categories, 1))
    )


@router.message(Command("broadcast"))
async def broadcast(message: Message, settings: Settings, storefront: Storefront):
    if not is_admin(message.from_user.id, settings):
        return
    text = command_args(message)
    if not text:
        await message.answer("❌ Format: /broadcast <pesan>\n\nContoh:\n/broadcast Halo semua!")
        return
    await message.answer(f"📢 Mengirim broadcast ke {len(storefront.accounts.users())} user...")
    sent, failed = await storefront.broadcast(text)
    await message.answer(f"✅ Broadcast selesai!\n\n✔️ Berhasil: {sent}\n❌ Gagal: {failed}")
