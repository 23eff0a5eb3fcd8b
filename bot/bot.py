import asyncio, logging, os, httpx
from aiogram import Bot, Dispatcher, F, types
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties
from aiogram.filters import Command
from aiogram.types import ReplyKeyboardMarkup, KeyboardButton

TOKEN = os.getenv("TOKEN")
BACKEND_URL = os.getenv("BACKEND_URL", "http://127.0.0.1:8000")

logger = logging.getLogger(__name__)

PLAY_TEXT = "🚀 Jogar"
CASHOUT_TEXT = "💰 Retirar"

dp = Dispatcher()

# --- helpers HTTP ---
class BackendError(Exception):
    pass

async def get_json(path):
    async with httpx.AsyncClient(timeout=15) as cli:
        r = await cli.get(BACKEND_URL.rstrip("/") + path)
        r.raise_for_status()
        return r.json()

async def post_json(path, payload=None):
    async with httpx.AsyncClient(timeout=15) as cli:
        r = await cli.post(BACKEND_URL.rstrip("/") + path, json=payload or {})
        if r.status_code == 400:
            raise BackendError(r.json().get("detail", "request rejected"))
        r.raise_for_status()
        return r.json()

# --- formatação ---
def format_outcome(res: dict) -> str:
    return (
        f"💰 Retirou em <b>{res['multiplier']:.2f}x</b>: +${res['payout']:.2f}\n"
        f"Saldo: <b>${res['balance']:.2f}</b>"
    )

def format_history(rounds: list) -> str:
    if not rounds:
        return "Nenhuma rodada ainda."
    marks = {"jackpot": " 🏆", "big": " 🔥"}
    lines = []
    for r in rounds:
        src = "⚛️" if r.get("quantum") else "🎲"
        lines.append(f"{src} {r['crash_multiplier']:.2f}x{marks.get(r.get('highlight'), '')}")
    return "\n".join(lines)

def format_error(e: Exception) -> str:
    if isinstance(e, BackendError):
        return f"⚠️ {e}"
    return f"❌ Erro ao falar com o servidor.\n<code>{e}</code>"

# --- comandos ---
@dp.message(Command("start"))
async def cmd_start(m: types.Message):
    kb = ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=PLAY_TEXT), KeyboardButton(text=CASHOUT_TEXT)]],
        resize_keyboard=True
    )
    await m.answer("Bem-vindo ao <b>Rocket Crash</b>!\n\nToque em <b>🚀 Jogar</b> e retire antes do foguete explodir.", reply_markup=kb)

@dp.message(Command("play"))
@dp.message(F.text == PLAY_TEXT)
async def cmd_play(m: types.Message):
    try:
        res = await post_json("/play")
    except Exception as e:
        await m.answer(format_error(e))
        return
    if res.get("started"):
        await m.answer(f"🚀 Decolou! Saldo: <b>${res['balance']:.2f}</b>")
    else:
        await m.answer("Rodada cancelada antes da decolagem.")

@dp.message(Command("cashout"))
@dp.message(F.text == CASHOUT_TEXT)
async def cmd_cashout(m: types.Message):
    try:
        res = await post_json("/cashout")
    except Exception as e:
        await m.answer(format_error(e))
        return
    await m.answer(format_outcome(res))

@dp.message(Command("saldo"))
async def cmd_saldo(m: types.Message):
    try:
        data = await get_json("/balance")
    except Exception as e:
        await m.answer(format_error(e))
        return
    await m.answer(f"💳 Seu saldo: <b>${data.get('balance', 0):.2f}</b>")

@dp.message(Command("history"))
async def cmd_history(m: types.Message):
    try:
        data = await get_json("/history?limit=12")
    except Exception as e:
        await m.answer(format_error(e))
        return
    await m.answer(format_history(data.get("rounds", [])))

async def main():
    if not TOKEN:
        raise RuntimeError("Env TOKEN não definido.")
    logging.basicConfig(level=logging.INFO)
    bot = Bot(TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    logger.info("Starting bot polling…")
    await dp.start_polling(bot)

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
