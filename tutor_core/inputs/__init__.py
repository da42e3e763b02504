"""多模态输入：文本与 OCR 结果合并、图片附件、语音转写。"""
