"""User-facing texts shared by several handlers."""

WELCOME = """哈囉！我是您的 AI 日曆助理。用自然語言輕鬆管理 Google 日曆！

您可以這樣對我說：

🗓️ 新增活動：
  • 明天早上9點開會
  • 9月15號下午三點跟John面試
  • 10/1 14:00 專案會議 地點在301會議室 備註：討論Q4目標
  • 每週一早上9點的站立會議 (會追問結束條件)

🔍 查詢活動：
  • 明天有什麼事
  • 下週有什麼活動
  • 我什麼時候要跟John面試

✏️ 修改活動：
  • 把明天下午3點的會議改到下午4點
  • 修改後天的會議 (會反問您想修改的內容，可包含地點、備註)

🗑️ 刪除活動：
  • 取消明天下午3點的會議

📊 班表建立 (支援 CSV / XLSX！)：
  • 先說「幫我建立[人名]的班表」，再傳 CSV 或 XLSX 格式檔案。

若在對話中想中斷操作，隨時可輸入「取消」。

💡 小提示：隨時輸入「功能列表」或「你會什麼」，就可以再次看到這個功能選單喔！"""

CANCELLED = "好的，操作已取消。"
EXPIRED = "抱歉，您的請求已逾時或無效，請重新操作。"
GENERIC_FAILURE = "抱歉，處理您的請求時發生錯誤，請稍後再試。"
CREATE_FAILED = "抱歉，新增日曆事件時發生錯誤。"
UPDATE_FAILED = "抱歉，更新活動時發生錯誤。"
MISSING_CALENDAR = "錯誤：找不到日曆資訊，請重新操作。"
MODIFY_PROMPT = (
    "請問您想如何修改這個活動？\n"
    "(例如：標題改為「團隊午餐」、時間改到明天下午一點、地點在公司餐廳、加上備註「討論Q4規劃」)\n\n"
    "若不需要做修改，請輸入「取消」。"
)
PARTIAL_RESULTS_WARNING = "⚠️ 部分日曆暫時無法查詢，結果可能不完整。"
RECURRENCE_PROMPT_EXAMPLES = "(例如: 直到年底、重複10次、或直到 2025/12/31)"
