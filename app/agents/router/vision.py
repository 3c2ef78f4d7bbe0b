from langchain_core.messages import HumanMessage

MAX_IMAGES = 4

def build_delegate_message(text: str, image_urls: list[str]) -> HumanMessage:
    # Only http(s) URLs are forwarded as images; catalog paths stay in the text context.
    urls = [url for url in image_urls if url.startswith(("http://", "https://"))][:MAX_IMAGES]
    if not urls:
        return HumanMessage(content=text)

    content = [{"type": "text", "text": text}]
    for url in urls:
        content.append({"type": "image_url", "image_url": {"url": url}})

    return HumanMessage(content=content)
