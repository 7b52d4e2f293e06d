"""
API 層

FastAPI routers，只負責 request/response 轉換與錯誤對應：
- rounds：目前回合、歷史、下注、下注紀錄、統計
- accounts：帳戶餘額
- websocket：回合事件即時推播
"""
